"""mylife cloud SOAP client.

Speaks SOAP 1.1 over HTTPS to the mylife event archive service: a Login
call exchanging account credentials for a session token, and a
GetEventArchive call returning the encrypted archive for a time window.
"""

import xml.etree.ElementTree as ET
from datetime import UTC, datetime, timedelta
from xml.sax.saxutils import escape

import httpx

from mylife_sync.core.errors import AuthError, SessionRejectedError, TransportError
from mylife_sync.logging_config import get_logger
from mylife_sync.models.archive import FetchWindow, RawArchiveBlob
from mylife_sync.services.session import Session

logger = get_logger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SERVICE_NS = "http://mylife-software.net/services/eventarchive/"
SERVICE_PATH = "/Services/EventArchiveService.svc"

DEFAULT_SESSION_LIFETIME_SECONDS = 3600

# Fault codes
FAULT_INVALID_CREDENTIALS = "InvalidCredentials"
FAULT_SESSION_EXPIRED = "SessionExpired"
FAULT_INVALID_TOKEN = "InvalidToken"
FAULT_UNAUTHORIZED = "Unauthorized"  # HTTP 401 without a SOAP body

_REJECTED_LOGIN_FAULTS = {FAULT_INVALID_CREDENTIALS, FAULT_UNAUTHORIZED}
_REJECTED_SESSION_FAULTS = {FAULT_SESSION_EXPIRED, FAULT_INVALID_TOKEN, FAULT_UNAUTHORIZED}


class SoapFaultError(TransportError):
    """The service answered with a SOAP fault."""

    def __init__(self, code: str, message: str):
        super().__init__(f"SOAP fault {code}: {message}")
        self.code = code


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find(root: ET.Element, name: str) -> ET.Element | None:
    for elem in root.iter():
        if _local_name(elem.tag) == name:
            return elem
    return None


def _find_text(root: ET.Element, name: str) -> str | None:
    elem = _find(root, name)
    if elem is None or elem.text is None:
        return None
    return elem.text.strip()


def build_envelope(operation: str, fields: dict[str, str]) -> bytes:
    """Build a SOAP 1.1 request envelope for a service operation."""
    parts = "".join(
        f"<svc:{name}>{escape(value)}</svc:{name}>" for name, value in fields.items()
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}" xmlns:svc="{SERVICE_NS}">'
        f"<soap:Body><svc:{operation}>{parts}</svc:{operation}></soap:Body>"
        "</soap:Envelope>"
    ).encode("utf-8")


class MyLifeSoapClient:
    """Client for the mylife event archive service."""

    def __init__(
        self,
        base_url: str,
        device_serial: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = f"{base_url.rstrip('/')}{SERVICE_PATH}"
        self._device_serial = device_serial
        self._timeout = timeout
        self._transport = transport

    async def _call(self, operation: str, fields: dict[str, str]) -> ET.Element:
        """POST one SOAP operation and return the parsed response envelope.

        Raises:
            SoapFaultError: HTTP 401 or a SOAP fault in the response
            TransportError: Network failure, HTTP error or unreadable body
        """
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{SERVICE_NS}{operation}"',
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._url,
                    content=build_envelope(operation, fields),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise TransportError(
                f"Failed to reach mylife cloud ({operation}): {type(e).__name__}"
            ) from e

        if response.status_code == 401:
            raise SoapFaultError(FAULT_UNAUTHORIZED, "HTTP 401")

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise TransportError(
                f"Unreadable {operation} response (HTTP {response.status_code})"
            ) from e

        fault = _find(root, "Fault")
        if fault is not None:
            code = _find_text(fault, "ErrorCode") or _find_text(fault, "faultcode") or ""
            message = _find_text(fault, "faultstring") or "no fault string"
            # faultcode values are QNames such as "soap:Client"
            raise SoapFaultError(code.rsplit(":", 1)[-1], message)

        if response.status_code >= 400:
            raise TransportError(f"{operation} failed with HTTP {response.status_code}")
        return root

    async def login(self, username: str, password: str) -> Session:
        """Exchange account credentials for a session.

        Raises:
            AuthError: retryable=False when the credentials were rejected,
                retryable=True for any other failure
        """
        try:
            root = await self._call(
                "Login", {"UserName": username, "Password": password}
            )
        except SoapFaultError as e:
            if e.code in _REJECTED_LOGIN_FAULTS:
                raise AuthError("mylife rejected the credentials", retryable=False) from e
            raise AuthError(f"mylife login failed: {e}", retryable=True) from e
        except TransportError as e:
            raise AuthError(f"mylife login failed: {e}", retryable=True) from e

        token = _find_text(root, "Token")
        if not token:
            raise AuthError("mylife login response carried no token", retryable=True)

        lifetime = DEFAULT_SESSION_LIFETIME_SECONDS
        raw_lifetime = _find_text(root, "ExpiresInSeconds")
        if raw_lifetime:
            try:
                lifetime = int(raw_lifetime)
            except ValueError:
                logger.warning(
                    "Ignoring invalid session lifetime", expires_in=raw_lifetime
                )

        issued_at = datetime.now(UTC)
        return Session(
            token=token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=lifetime),
        )

    async def fetch_archive(self, session: Session, window: FetchWindow) -> RawArchiveBlob:
        """Fetch the encrypted event archive for a time window.

        Raises:
            SessionRejectedError: The server no longer accepts the session
            TransportError: Any other failure
        """
        try:
            root = await self._call(
                "GetEventArchive",
                {
                    "Token": session.token,
                    "DeviceSerial": self._device_serial,
                    "From": window.start.astimezone(UTC).isoformat(),
                    "To": window.end.astimezone(UTC).isoformat(),
                },
            )
        except SoapFaultError as e:
            if e.code in _REJECTED_SESSION_FAULTS:
                raise SessionRejectedError("mylife session was rejected") from e
            raise

        archive = _find(root, "Archive")
        if archive is None:
            raise TransportError("GetEventArchive response carried no archive")

        data = (archive.text or "").strip().encode("ascii", errors="replace")
        blob = RawArchiveBlob(
            data=data,
            version=archive.get("Version", ""),
            encoding=archive.get("Encoding", ""),
            window=window,
        )
        logger.info(
            "Fetched mylife event archive",
            archive_bytes=len(data),
            archive_version=blob.version,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
        )
        return blob
