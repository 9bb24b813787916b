"""
HTTP Service Clients

Async clients for the upstream configuration API:
- Table schema:          GET  /config/tables/{id}
- Dimension columns:     GET  /config/dimensions/{id}
- Model persistence:     POST /config/models, GET|PUT|DELETE /config/models/{id}

Every response uses the envelope {"code": 200, "message": "...", "data": ...}.
Connection failures, timeouts, HTTP errors and non-200 envelope codes are all
raised as ModelerError in the service category.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from modeler.core.config import Settings, get_settings
from modeler.errors import (
    ModelerError, model_not_found, service_rejected, service_unavailable,
)
from modeler.modeling.schema_cache import ColumnInfo, DimensionColumn
from .base import DimensionService, ModelService, SchemaService

logger = logging.getLogger(__name__)


class ApiClient:
    """
    Async client for the configuration API.

    Example:
        async with ApiClient("http://localhost:8000/api/v1", token="...") as api:
            schema = HttpSchemaService(api)
            fields = await schema.get_table_schema(12)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        app_id: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the API client.

        Args:
            base_url: Base URL including the API prefix, e.g. ``.../api/v1``
            token: Bearer token for the Authorization header
            app_id: Application scope sent as the App-ID header
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.app_id = app_id
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "ApiClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.api_base_url,
            token=settings.api_token,
            app_id=settings.app_id,
            timeout=settings.request_timeout,
            **kwargs
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json"
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            if self.app_id:
                headers["App-ID"] = self.app_id

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def request(
        self,
        service: str,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None
    ) -> Any:
        """Make a request and return the envelope's ``data``."""
        client = self._get_client()

        try:
            response = await client.request(method.upper(), path, json=data, params=params)
        except httpx.ConnectError as e:
            raise service_unavailable(service, f"Failed to connect to {self.base_url}: {e}")
        except httpx.TimeoutException as e:
            raise service_unavailable(service, f"Request timed out after {self.timeout}s: {e}")
        except httpx.HTTPError as e:
            raise service_unavailable(service, f"Request failed: {e}")

        return self._handle_response(service, response)

    def _handle_response(self, service: str, response: httpx.Response) -> Any:
        """Unwrap the response envelope, raising on any failure."""
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code != 200:
            message = response.text or f"HTTP {response.status_code}"
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("detail") or message
            logger.warning(f"{service} service returned HTTP {response.status_code}: {message}")
            if response.status_code >= 500:
                raise service_unavailable(service, f"HTTP {response.status_code}: {message}")
            raise service_rejected(service, str(message), code=response.status_code)

        if not isinstance(payload, dict) or "code" not in payload:
            raise service_rejected(service, "response is not an API envelope")

        if payload["code"] != 200:
            message = payload.get("message") or "request failed"
            logger.warning(f"{service} service rejected request: [{payload['code']}] {message}")
            raise service_rejected(service, message, code=payload["code"])

        return payload.get("data")

    async def close(self):
        """Close the client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class HttpSchemaService(SchemaService):
    """Table schemas from the table configuration endpoint."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_table_schema(self, table_id: int) -> List[ColumnInfo]:
        data = await self.api.request("schema", "GET", f"/config/tables/{table_id}")
        fields = (data or {}).get("fields") or []
        logger.debug(f"Fetched {len(fields)} column(s) for table {table_id}")
        return [ColumnInfo.from_dict(f) for f in fields]


class HttpDimensionService(DimensionService):
    """Dimension custom columns from the dimension configuration endpoint."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_dimension_columns(self, dimension_id: int) -> List[DimensionColumn]:
        data = await self.api.request("dimension", "GET", f"/config/dimensions/{dimension_id}")
        columns = (data or {}).get("custom_columns") or []
        return [DimensionColumn.from_dict(c) for c in columns]


class HttpModelService(ModelService):
    """Model definitions stored by the remote persistence service."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def _request(self, model_id: int, method: str, data: Optional[dict] = None) -> Any:
        try:
            return await self.api.request("persistence", method, f"/config/models/{model_id}", data=data)
        except ModelerError as e:
            if e.details.get("service_code") == 404:
                raise model_not_found(model_id)
            raise

    async def create_model(self, document: Dict[str, Any]) -> int:
        data = await self.api.request("persistence", "POST", "/config/models", data=document)
        return int((data or {}).get("id") or 0)

    async def update_model(self, model_id: int, document: Dict[str, Any]) -> None:
        await self._request(model_id, "PUT", document)

    async def get_model(self, model_id: int) -> Dict[str, Any]:
        data = await self._request(model_id, "GET")
        if not data:
            raise model_not_found(model_id)
        return data

    async def delete_model(self, model_id: int) -> bool:
        await self._request(model_id, "DELETE")
        return True

    async def list_models(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"parent_id": parent_id} if parent_id is not None else None
        data = await self.api.request("persistence", "GET", "/config/models", params=params)
        if isinstance(data, dict):
            return data.get("list", [])
        return data or []
