class GatewayError(Exception):
    """Base for errors surfaced synchronously to the API caller."""

    status_code = 400
    code = "BAD_REQUEST_ERROR"

    def __init__(self, description: str, code: str = None):
        super().__init__(description)
        self.description = description
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "description": self.description}}


class ValidationFailed(GatewayError):
    pass


class NotFound(GatewayError):
    status_code = 404
    code = "NOT_FOUND_ERROR"


class StateConflict(GatewayError):
    pass


class AuthenticationFailed(GatewayError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"
