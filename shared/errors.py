"""Exceptions shared across services."""


class NotFoundError(LookupError):
    """A referenced supplier, product, transaction, email or mapping does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")
