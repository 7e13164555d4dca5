from typing import Optional


class UniqueConstraintError(Exception):
    """
    Raised by the storage clients when an insert or update hits a unique constraint.
    `constraint` names the violated constraint so callers can tell which key collided.
    """

    def __init__(self, constraint: Optional[str] = None, message: str = "Unique constraint violated."):
        super().__init__(message)
        self.constraint = constraint
