"""
Errors raised by the recurring-services core.

The API layer maps each class to an HTTP status; messages are surfaced to the
caller verbatim.
"""


class RecurringServiceError(Exception):
    """Base class for recurring-services errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RecurringServiceError):
    """Bad frequency, day or amount on create/update. Nothing was persisted."""

    status_code = 400


class DuplicateServiceError(RecurringServiceError):
    """A live service with the same normalized name already exists for the user."""

    status_code = 409

    def __init__(self, name: str, normalized_name: str):
        super().__init__(f"A service named '{name}' already exists")
        self.name = name
        self.normalized_name = normalized_name


class AlreadyLinkedError(RecurringServiceError):
    """The transaction already funds a realized payment; unlink it first."""

    status_code = 409

    def __init__(self, transaction_id, service_id=None):
        super().__init__(f"Transaction {transaction_id} is already linked to a service")
        self.transaction_id = transaction_id
        self.service_id = service_id


class NotFoundError(RecurringServiceError):
    """Unknown service, payment or transaction id for the requesting user."""

    status_code = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id
