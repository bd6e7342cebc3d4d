class ClientCertError(Exception):
    """
    Base class for every error that ends a client certificate run.

    ``stage`` names the pipeline step that failed and is used for the one line
    diagnostic printed before exiting.
    """

    stage = "client certificate"

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class InputError(ClientCertError):
    stage = "input"


class CryptoError(ClientCertError):
    stage = "key generation"


class EncodingError(CryptoError):
    stage = "certificate request"


class APIError(ClientCertError):
    stage = "cluster API"


class ConflictError(APIError):
    stage = "submit"


class IssuanceTimeout(ClientCertError):
    stage = "issuance"


class DecodeError(ClientCertError):
    stage = "certificate decoding"


class FileIOError(ClientCertError):
    stage = "output"
