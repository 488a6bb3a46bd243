"""
Error Taxonomy Module

Every error raised inside the bridge carries the protocol response code the
gateway answers with when the error reaches the synchronous boundary.
"""

from typing import Optional


class ResponseCode:
    """Protocol response codes"""
    SUCCESS = "8000"
    MALFORMED_MESSAGE = "8001"
    MISSING_FIELD = "8003"
    NOT_FOUND = "8004"
    INVALID_CALCULATION = "8005"
    ILLEGAL_STATE = "8006"
    TRY_LATER = "8012"


DESCRIPTIONS = {
    ResponseCode.SUCCESS: "Request has been processed successfully",
    ResponseCode.MALFORMED_MESSAGE: "Malformed or unverifiable message",
    ResponseCode.MISSING_FIELD: "Missing required field",
    ResponseCode.NOT_FOUND: "Application or loan not found",
    ResponseCode.INVALID_CALCULATION: "Invalid calculation input",
    ResponseCode.ILLEGAL_STATE: "Illegal state transition",
    ResponseCode.TRY_LATER: "Request cannot be completed at this time, try later",
}


class BridgeError(Exception):
    """Base class for all bridge errors"""

    response_code = ResponseCode.TRY_LATER

    def __init__(self, message: Optional[str] = None, response_code: Optional[str] = None):
        if response_code:
            self.response_code = response_code
        self.message = message or DESCRIPTIONS.get(self.response_code, "Error")
        super().__init__(self.message)


class ProtocolError(BridgeError):
    """Malformed, unsigned or incomplete inbound message"""

    response_code = ResponseCode.MALFORMED_MESSAGE

    def __init__(self, code: str = ResponseCode.MALFORMED_MESSAGE, message: Optional[str] = None):
        super().__init__(message, code)


class NotFoundError(BridgeError):
    """Referenced application or loan does not exist"""

    response_code = ResponseCode.NOT_FOUND


class StateError(BridgeError):
    """Requested transition is not legal from the current status"""

    response_code = ResponseCode.ILLEGAL_STATE


class ConcurrencyError(StateError):
    """A conditional update lost against a concurrent writer"""


class CalculationError(BridgeError):
    """Numeric input or result is invalid (non-finite, negative or non-numeric)"""

    response_code = ResponseCode.INVALID_CALCULATION


class LedgerError(BridgeError):
    """The ledger rejected a call or could not be reached"""

    response_code = ResponseCode.TRY_LATER

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None,
                 operation: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class LedgerUnavailableError(LedgerError):
    """Timeout or transport failure talking to the ledger"""
