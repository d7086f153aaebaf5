"""
Tally HTTP client.

Posts XML to Tally's HTTP port in Tally's wide-character encoding (UTF-16LE
by default) and decodes the reply, with retry on connection failures.
"""
from __future__ import annotations
import codecs
import re
from typing import Optional
from xml.sax.saxutils import unescape
import requests
from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type
from loguru import logger

from .config import SyncConfig

USER_AGENT = "tally-sync/1.0"

_ERROR_PATTERNS = (
    r"<LINEERROR>(.*?)</LINEERROR>",
    r"<ERRORMSG>(.*?)</ERRORMSG>",
    r"<ERROR>(.*?)</ERROR>",
)
_ENTITIES = {"&apos;": "'", "&quot;": '"'}

PROBE_XML = """<ENVELOPE>
  <HEADER>
    <VERSION>1</VERSION>
    <TALLYREQUEST>Export</TALLYREQUEST>
    <TYPE>Collection</TYPE>
    <ID>TallySyncCompanies</ID>
  </HEADER>
  <BODY>
    <DESC>
      <STATICVARIABLES>
        <SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>
      </STATICVARIABLES>
      <TDL>
        <TDLMESSAGE>
          <COLLECTION NAME="TallySyncCompanies" ISMODIFY="No">
            <TYPE>Company</TYPE>
            <FETCH>Name</FETCH>
          </COLLECTION>
        </TDLMESSAGE>
      </TDL>
    </DESC>
  </BODY>
</ENVELOPE>"""


class TallyConnectionError(Exception):
    """Raised when connection to Tally fails."""
    pass


class TallyResponseError(Exception):
    """Raised when Tally returns an error response."""
    pass


def content_type_for(encoding: str) -> str:
    name = codecs.lookup(encoding).name
    charset = "utf-16" if name.startswith("utf-16") else name
    return f"text/xml;charset={charset}"


def decode_response(content: bytes, encoding: str) -> str:
    """
    Decode a Tally reply.

    A byte order mark wins over the configured encoding. Tally answers some
    requests (errors, plain text exports) in single-byte text even when the
    request was UTF-16, so a UTF-16 decode is only attempted when the body
    actually contains NUL bytes.
    """
    if not content:
        return ""
    if content.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return content.decode("utf-16", errors="replace")
    if content.startswith(codecs.BOM_UTF8):
        return content.decode("utf-8-sig", errors="replace")
    if codecs.lookup(encoding).name.startswith("utf-16") and b"\x00" not in content[:200]:
        return content.decode("utf-8", errors="replace")
    return content.decode(encoding, errors="replace")


def extract_error(text: str) -> Optional[str]:
    """Extract error message from a Tally response."""
    for pattern in _ERROR_PATTERNS:
        match = re.search(pattern, text, re.IGNORECASE | re.DOTALL)
        if match:
            return unescape(match.group(1).strip(), _ENTITIES)

    # Plain text "Could not find Report ..." errors
    match = re.search(r"(Could not find[^<]+)", text)
    if match:
        return unescape(match.group(1).strip(), _ENTITIES)
    return None


def is_error_response(text: str) -> bool:
    if "<STATUS>0</STATUS>" in text:
        return True
    if "<LINEERROR>" in text or "<ERRORMSG>" in text:
        return True
    return "Could not find" in text and "Report" in text


class TallyClient:
    """
    HTTP client for the Tally XML API with retry logic.

    Features:
    - Automatic retry with exponential backoff on connection failures
    - Connection pooling via requests.Session
    - Request/response encoding matching Tally's configuration
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        url: Optional[str] = None,
        company: Optional[str] = None,
    ):
        self.config = config or SyncConfig.from_env()
        self.base_url = (url or self.config.tally_url).rstrip("/")
        self.company = company or self.config.tally_company
        self.encoding = self.config.tally_encoding
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": content_type_for(self.encoding),
            "Accept": "text/xml",
            "User-Agent": USER_AGENT,
        })

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(TallyConnectionError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying Tally request (attempt {retry_state.attempt_number})..."
        ),
    )
    def post_xml(self, xml: str, timeout: Optional[float] = None) -> str:
        """
        Post XML to Tally and return the decoded response.

        The body is encoded with the configured encoding; requests derives the
        Content-Length header from the encoded byte length.

        Args:
            xml: XML request string
            timeout: Request timeout in seconds (uses config default if not specified)

        Returns:
            Response text

        Raises:
            TallyConnectionError: If Tally is unreachable or times out
            TallyResponseError: If Tally returns an error
        """
        timeout = timeout or self.config.request_timeout
        body = xml.encode(self.encoding)
        try:
            r = self.session.post(self.base_url, data=body, timeout=timeout)
            r.raise_for_status()
        except requests.ConnectionError as e:
            logger.error(f"Failed to connect to Tally at {self.base_url}: {e}")
            raise TallyConnectionError(f"Cannot connect to Tally: {e}") from e
        except requests.Timeout as e:
            logger.error(f"Tally request timed out after {timeout}s")
            raise TallyConnectionError(f"Request timeout: {e}") from e
        except requests.RequestException as e:
            logger.error(f"Tally request failed: {e}")
            raise TallyConnectionError(f"Request failed: {e}") from e

        text = decode_response(r.content, self.encoding)
        if is_error_response(text):
            message = extract_error(text) or "unknown error"
            raise TallyResponseError(f"Tally error: {message}")

        logger.debug(f"Tally replied with {len(text)} characters")
        return text

    def test_connection(self) -> dict:
        """
        Test connection to Tally and return server info.

        Returns:
            Dict with connection status and the companies Tally has open
        """
        try:
            response = self.post_xml(PROBE_XML, timeout=self.config.request_timeout)
        except (TallyConnectionError, TallyResponseError) as e:
            return {
                "status": "failed",
                "url": self.base_url,
                "error": str(e),
            }

        companies = re.findall(r'<COMPANY\s+NAME="([^"]*)"', response)
        result = {
            "status": "connected",
            "url": self.base_url,
            "company": self.company,
            "companies": [unescape(c, _ENTITIES) for c in companies],
            "response_length": len(response),
        }
        if companies and self.company not in result["companies"]:
            result["status"] = "connected_no_company"
        return result

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
