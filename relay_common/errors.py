from typing import Optional


class RelayError(Exception):
    pass


class AuthError(RelayError):
    pass


class InvalidToken(AuthError):
    pass


class ExpiredToken(AuthError):
    pass


class ProtocolError(RelayError):
    pass


class UnknownConnection(ProtocolError):
    def __init__(self, connection_id: str):
        super().__init__(f"Unknown connection: {connection_id}")
        self.connection_id: str = connection_id


class MalformedPrompt(ProtocolError):
    def __init__(
        self, reason: str, client_request_id: Optional[str] = None
    ):
        super().__init__(reason)
        self.client_request_id: Optional[str] = client_request_id


class DispatchError(RelayError):
    def __init__(
        self,
        reason: str,
        request_id: Optional[str] = None,
        client_request_id: Optional[str] = None,
    ):
        super().__init__(reason)
        self.request_id: Optional[str] = request_id
        self.client_request_id: Optional[str] = client_request_id


class ProcessingError(RelayError):
    pass


class GenerationTimeout(ProcessingError):
    pass
