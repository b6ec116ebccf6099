from typing import Optional


class ReconcilerError(Exception):
    pass


class ExternalApiError(ReconcilerError):
    """BrickLink answered with a non-success HTTP status or a bad envelope"""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.path = path
        self.status_code = status_code


class MissingCredentialsError(ExternalApiError):
    pass


class StoreWriteError(ReconcilerError):
    """An upsert, update, delete or atomic statement failed"""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table
