"""
Messaging error taxonomy.

Every failure the messaging core reports to a caller is a ``MessagingError``.
``retryable`` tells clients whether a visible retry makes sense; the HTTP layer
maps ``status_code`` onto the response.
"""

from typing import Optional


class MessagingError(Exception):
    """Base class for messaging failures."""

    code = "MESSAGING_ERROR"
    status_code = 400
    retryable = False
    default_message = "Messaging operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class NotParticipant(MessagingError):
    code = "NOT_PARTICIPANT"
    status_code = 403
    default_message = "You are not a participant of this conversation"


class ConversationNotFound(MessagingError):
    code = "CONVERSATION_NOT_FOUND"
    status_code = 404
    default_message = "Conversation not found"


class MessageNotFound(MessagingError):
    code = "MESSAGE_NOT_FOUND"
    status_code = 404
    default_message = "Message not found"


class InvalidParticipant(MessagingError):
    code = "INVALID_PARTICIPANT"
    default_message = "Invalid participant"


class InvalidRequest(MessagingError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class NotAuthor(MessagingError):
    code = "NOT_AUTHOR"
    status_code = 403
    default_message = "Only the sender can change this message"


class NotEditable(MessagingError):
    code = "NOT_EDITABLE"
    status_code = 403
    default_message = "This message can no longer be edited"


class FileTooLarge(MessagingError):
    code = "FILE_TOO_LARGE"
    status_code = 413
    default_message = "File is too large (maximum 10MB)"


class UnsupportedType(MessagingError):
    code = "UNSUPPORTED_TYPE"
    status_code = 415
    default_message = "Unsupported file type"


class RateLimited(MessagingError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True
    default_message = "Too many messages, please wait"


class UploadFailed(MessagingError):
    code = "UPLOAD_FAILED"
    status_code = 503
    retryable = True
    default_message = "File upload failed"


class StoreUnavailable(MessagingError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Message store is unavailable"


class ChannelDisconnected(MessagingError):
    code = "CHANNEL_DISCONNECTED"
    status_code = 503
    retryable = True
    default_message = "Realtime channel disconnected"
