"""Error types raised by the browser login flow.

Every error derives from OAuthFlowError so the CLI can report any login
failure with a single handler. None of these are retried inside the flow:
recovering means running ``logchef auth`` again, which starts a fresh
session with a new verifier, state and callback port.

Error messages never include the PKCE verifier or any issued token.
"""


class OAuthFlowError(Exception):
    """Error during the browser login flow."""

    pass


class EntropyError(OAuthFlowError):
    """The platform random source could not be read."""

    pass


class DiscoveryError(OAuthFlowError):
    """Error fetching or validating the OIDC discovery document."""

    pass


class CallbackError(OAuthFlowError):
    """Error in the loopback callback server."""

    pass


class BindError(CallbackError):
    """No local port could be bound for the callback server."""

    pass


class CallbackTimeoutError(CallbackError):
    """No valid callback arrived before the deadline."""

    pass


class CsrfMismatchError(OAuthFlowError):
    """The callback state does not match the state sent to the provider.

    Treated as a possible attack: the flow aborts before the authorization
    code is used.
    """

    pass


class TokenExchangeError(OAuthFlowError):
    """Error during one of the token exchanges."""

    pass


class NetworkError(TokenExchangeError):
    """Transport failure or timeout talking to a token endpoint."""

    pass


class HttpStatusError(TokenExchangeError):
    """Token endpoint answered with a non-2xx status.

    Attributes:
        status_code: HTTP status returned by the endpoint
        body: Raw response body, kept for debugging and never part of the
            exception message
    """

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class JsonError(TokenExchangeError):
    """Token endpoint returned a body that is not a JSON object."""

    pass


class MissingFieldError(TokenExchangeError):
    """Well-formed JSON response is missing a required field.

    Attributes:
        field: Name of the missing field
    """

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class MissingIdTokenError(MissingFieldError):
    """Token endpoint response carries no id_token."""

    def __init__(self, message: str = "Token response did not include an id_token"):
        super().__init__(message, field="id_token")


class AuthNotConfiguredError(OAuthFlowError):
    """The server does not advertise an OIDC issuer and CLI client ID."""

    pass
