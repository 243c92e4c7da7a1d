from __future__ import annotations


class SignerError(Exception):
    """Failure talking to one signing service (never a signature verdict)."""

    retryable = False

    def __init__(self, operator_id: str, detail: str) -> None:
        super().__init__(f"{operator_id}: {detail}")
        self.operator_id = operator_id
        self.detail = detail


class SignerUnavailable(SignerError):
    # Timeouts, refused connections, 5xx.
    retryable = True


class SignerRejected(SignerError):
    # 4xx: unknown operator, bad digest. Retrying will not help.
    retryable = False


class DigestMismatch(Exception):
    """Rebuilt message digest differs from the one announced by the source chain."""


class CollectionFailed(Exception):
    def __init__(self, detail: str, *, achieved: int = 0, total: int = 0) -> None:
        super().__init__(detail)
        self.achieved = achieved
        self.total = total
