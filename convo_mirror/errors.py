"""
Error taxonomy for the ingestion engine.

Authentication and payload errors stay inside the webhook boundary,
remote fetch errors stay inside the reconciler. Only DataIntegrityConflict
is raised by the store itself.
"""


class IngestionError(Exception):
    """Base class for ingestion and reconciliation errors."""


class AuthenticationFailure(IngestionError):
    """Signature header missing, malformed, unsupported or mismatched."""


class Misconfiguration(IngestionError):
    """The webhook secret is not provisioned (operator problem, not client)."""


class MalformedPayload(IngestionError):
    """Event body is not valid JSON or does not have the expected shape."""


class RemoteFetchFailure(IngestionError):
    """Network, auth or rate-limit failure while reading provider history."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityConflict(IngestionError):
    """
    The same message id was observed with differing immutable fields.

    Attributes:
        conversation_id: Conversation owning the message
        message_id: The conflicting message id
        fields: Names of the immutable fields that differ
    """

    def __init__(self, conversation_id: str, message_id: str, fields: list[str]):
        super().__init__(
            f"message {message_id} in conversation {conversation_id} "
            f"differs on immutable fields: {', '.join(fields)}"
        )
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.fields = fields
