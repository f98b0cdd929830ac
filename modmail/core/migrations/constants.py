"""Constants for migration routines."""

INIT_FILE_NAME = "__init__.py"

COLUMN_NEXT_MESSAGE_NUMBER = "next_message_number"
COLUMN_INBOX_MESSAGE_ID = "inbox_message_id"
