"""
Error Taxonomy

Domain exceptions raised by the services and batch processors.
The FastAPI layer maps them to HTTP status codes in main.py.
"""

from typing import Optional


class CertifyError(Exception):
    """Base class for all domain errors"""


class NotFoundError(CertifyError):
    """An entity id could not be resolved"""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ColumnNotFoundError(CertifyError):
    """A named column is absent from the dataset"""

    def __init__(self, column: str, available: Optional[list] = None):
        self.column = column
        self.available = list(available or [])
        super().__init__(f"Column '{column}' not found in dataset")


class InvalidStateError(CertifyError):
    """Operation attempted from a disallowed state"""


class AlreadySentError(InvalidStateError):
    """Campaign has already been sent"""


class MalformedInputError(CertifyError):
    """Tabular input could not be parsed"""


class TransportError(CertifyError):
    """The mail transport failed to deliver a message"""
