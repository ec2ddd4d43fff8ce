from fastapi import HTTPException, status


class EscrowGuardException(HTTPException):
    def __init__(self, detail: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(EscrowGuardException):
    def __init__(self, resource: str, resource_id: str | None = None):
        detail = f"{resource} not found"
        if resource_id:
            detail = f"{resource} '{resource_id}' not found"
        super().__init__(detail=detail, status_code=status.HTTP_404_NOT_FOUND)


class PermissionDeniedError(EscrowGuardException):
    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class BadRequestError(EscrowGuardException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_400_BAD_REQUEST)


class ValidationError(EscrowGuardException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


class InvalidPhaseError(EscrowGuardException):
    def __init__(self, action: str, phase: str, detail: str | None = None):
        self.action = action
        self.phase = phase
        msg = detail or f"Cannot {action} while dispute is in phase '{phase}'"
        super().__init__(detail=msg, status_code=status.HTTP_409_CONFLICT)


class ConflictError(EscrowGuardException):
    """Optimistic-concurrency loss. The caller should re-read state and retry."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class CapabilityUnavailableError(EscrowGuardException):
    def __init__(self, capability: str, detail: str | None = None):
        self.capability = capability
        msg = f"Capability unavailable: {capability}"
        if detail:
            msg += f" - {detail}"
        super().__init__(detail=msg, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class PaymentError(EscrowGuardException):
    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        msg = f"Payment processor error: {operation}"
        if detail:
            msg += f" - {detail}"
        super().__init__(detail=msg, status_code=status.HTTP_502_BAD_GATEWAY)
