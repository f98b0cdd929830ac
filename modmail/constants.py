"""Constants used across the modmail relay.

Values here are platform limits and internal tuning, not user configuration.
"""

# Discord hard limit for a single message's content
MAX_MESSAGE_CONTENT_LENGTH = 2000
# Chunk size used when splitting long posts; leaves room for re-opened code fences
MESSAGE_CHUNK_LENGTH = 1990

# Discord API error codes
DISCORD_UNKNOWN_CHANNEL = 10003
DISCORD_UNKNOWN_MEMBER = 10007
DISCORD_CANNOT_MESSAGE_USER = 50007
DISCORD_HARMFUL_LINK = 240000
DISCOVERY_NAME_REJECTED = "Contains words not allowed for servers in Server Discovery"

# Channel name used when the platform rejects the derived one
FALLBACK_CHANNEL_NAME = "badname"
UNKNOWN_CHANNEL_NAME = "unknown"
# Channel names cannot contain "."; this look-alike is allowed
UNICODE_PERIOD = "\u2024"

# Scheduled transitions are polled, never timed individually
SCANNER_POLL_INTERVAL_S = 2.0

# Attachment storage
ATTACHMENT_MAX_RETRIES = 3
DISCORD_MAX_UPLOAD_BYTES = 8 * 1024 * 1024
SMALL_ATTACHMENT_LIMIT = 2 * 1024 * 1024

# Edit/delete audit notices render inline below this many characters
INLINE_DIFF_MAX_CHARS = 200

ZERO_WIDTH_SPACE = "\u200b"
CODE_FENCE = "```"

STICKER_URL_TEMPLATE = "https://media.discordapp.net/stickers/{sticker_id}.webp?size=160"

# Messages that should not open a brand-new thread on their own
ACCIDENTAL_THREAD_MESSAGES = frozenset(
    {
        "ok",
        "okay",
        "thanks",
        "ty",
        "k",
        "kk",
        "thank you",
        "thanx",
        "thnx",
        "thx",
        "tnx",
        "ok thank you",
        "ok thanks",
        "ok ty",
        "ok thanx",
        "ok thnx",
        "ok thx",
        "ok no problem",
        "ok np",
        "okay thank you",
        "okay thanks",
        "okay ty",
        "okay thanx",
        "okay thnx",
        "okay thx",
        "okay no problem",
        "okay np",
        "okey thank you",
        "okey thanks",
        "okey ty",
        "okey thanx",
        "okey thnx",
        "okey thx",
        "okey no problem",
        "okey np",
        "cheers",
    }
)
