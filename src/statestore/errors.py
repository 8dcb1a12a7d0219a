"""Errors raised by deployment record stores."""


class StoreError(Exception):
    """Persistence failure in a record store."""


class AlreadyExists(StoreError):
    """A record with this tag is already stored."""

    def __init__(self, tag: str):
        super().__init__(f"A deployment with tag {tag} already exists")
        self.tag = tag


class RecordNotFound(StoreError):
    """No record is stored under this tag."""

    def __init__(self, tag: str):
        super().__init__(f"Deployment not found: {tag}")
        self.tag = tag


class InvalidTransition(StoreError):
    """A status change that would move a record backwards."""

    def __init__(self, tag: str, current: str, new: str):
        super().__init__(f"Deployment {tag} cannot move from {current} to {new}")
        self.tag = tag
        self.current = current
        self.new = new
