"""Exception hierarchy for the Concord engine."""


class ConcordError(Exception):
    """Base exception for Concord errors."""

    pass


class NotFoundError(ConcordError):
    """Referenced element, edit, conflict or resolution does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class VersionMismatchError(ConcordError):
    """Optimistic commit lost a race against another writer."""

    def __init__(self, element_id: str, expected: int, actual: int) -> None:
        self.element_id = element_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version mismatch on {element_id}: expected {expected}, found {actual}"
        )


class InvalidTransitionError(ConcordError):
    """Illegal state change on an edit or conflict."""

    pass


class InvalidPolicyError(ConcordError):
    """Policy names an unknown strategy or is otherwise unusable."""

    pass


class UnresolvableConflictError(ConcordError):
    """A strategy could not produce an outcome and no fallback applies."""

    pass


class PersistenceError(ConcordError):
    """Transaction journal could not make a change durable."""

    pass
