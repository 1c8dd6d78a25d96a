"""
Common interface for the outbound protocol translators.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..config import GatewayConfig, get_config
from ..constants import Limits
from ..schemas.credential_schemas import TenantCredential
from ..schemas.query_schemas import CachedToken, OutboundRequest, QueryRequestConfig, Record
from ..utils.http_transport import TransportResponse
from ..utils.logger import get_logger


class ProtocolTranslator(ABC):
    """
    Turns a QueryRequestConfig into one outbound request and the target's
    response back into records.

    Subclasses only build and parse; sending is the dispatcher's job.
    """

    service_name = "protocol"

    def __init__(self, config: Optional[GatewayConfig] = None):
        self.config = config or get_config().gateway
        self.logger = get_logger()

    def tenant_url(self, credential: TenantCredential, *parts: str) -> str:
        """``{base_url}/{tenant_id}/{parts...}`` with single slashes."""
        segments = [credential.tenant_id or credential.tenant_name]
        segments.extend(part.strip("/") for part in parts if part)
        return "/".join([self.config.base_url] + segments)

    @staticmethod
    def base_headers(token: CachedToken, credential: TenantCredential) -> Dict[str, str]:
        headers = {"Authorization": token.authorization_header}
        headers.update(credential.infor_headers())
        return headers

    @staticmethod
    def preview(text: str) -> str:
        return text[: Limits.RAW_RESPONSE_PREVIEW_CHARS]

    @abstractmethod
    def build_request(
        self,
        request_config: QueryRequestConfig,
        token: CachedToken,
        credential: TenantCredential,
    ) -> OutboundRequest:
        """Build the outbound request for ``request_config``."""

    @abstractmethod
    def parse_response(
        self, response: TransportResponse, request_config: QueryRequestConfig
    ) -> List[Record]:
        """
        Extract records from a target response.

        Raises:
            UpstreamProtocolError: Fault or non-2xx status
            MalformedResponseError: 2xx body that is not the expected shape
        """
