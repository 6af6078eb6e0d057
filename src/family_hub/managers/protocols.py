"""Dependency injection protocols shared by the workflow managers."""

from typing import Any, Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class DatabaseManagerProtocol(Protocol):
    """Protocol for database manager dependency injection."""

    transactions_supported: Optional[bool]
    client: Any

    def get_collection(self, collection_name: str) -> Any: ...
    def log_query_start(
        self, collection_name: str, operation: str, query: Optional[Dict] = None, options: Optional[Dict] = None
    ) -> float: ...
    def log_query_success(
        self,
        collection_name: str,
        operation: str,
        start_time: float,
        result_count: Optional[int] = None,
        result_info: Optional[str] = None,
    ) -> None: ...
    def log_query_error(
        self, collection_name: str, operation: str, start_time: float, error: Exception, query: Optional[Dict] = None
    ) -> None: ...


@runtime_checkable
class EmailSenderProtocol(Protocol):
    """Protocol for email delivery."""

    async def send(self, to_email: str, subject: str, text: str, html: Optional[str] = None) -> None: ...


@runtime_checkable
class SmsSenderProtocol(Protocol):
    """Protocol for SMS delivery."""

    async def send(self, to_number: str, body: str) -> None: ...


@runtime_checkable
class NotifierProtocol(Protocol):
    """Protocol for the notification dispatcher."""

    async def notify(
        self, recipient: Dict[str, Any], subject: str, text: str, html: Optional[str] = None, kind: Any = None
    ) -> Any: ...

    async def deliver(
        self,
        method: Any,
        recipient: Dict[str, Any],
        subject: str,
        text: str,
        html: Optional[str] = None,
        sms_body: Optional[str] = None,
    ) -> Any: ...
