from __future__ import annotations


class BridgeError(RuntimeError):
    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class ConfigParseError(BridgeError):
    def __init__(self, field: str, value: str, reason: str = "") -> None:
        detail = f"invalid value for '{field}': {value!r}"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(detail, error_code="config_parse")
        self.field = field
        self.value = value


class NetworkError(BridgeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, error_code="network")
        self.status_code = status_code


class MalformedResponseError(BridgeError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="malformed_response")


class StaleReferenceError(BridgeError):
    def __init__(self, kind: str, identity: object) -> None:
        super().__init__(f"{kind} {identity!r} is no longer resolvable", error_code="stale_reference")
        self.kind = kind
        self.identity = identity
