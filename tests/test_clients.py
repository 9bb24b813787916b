"""
Tests for the HTTP service clients.
"""

import json

import httpx
import pytest

from modeler.core.config import Settings
from modeler.errors import ErrorCode, ModelerError
from modeler.modeling.persistence import definition_from_document
from modeler.services.clients import (
    ApiClient, HttpDimensionService, HttpModelService, HttpSchemaService,
)


BASE_URL = "http://upstream.test/api/v1"


def ok(data):
    return httpx.Response(200, json={"code": 200, "message": "success", "data": data})


def make_api(handler, **kwargs):
    return ApiClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


class TestApiClient:
    """Tests for envelope handling."""

    @pytest.mark.asyncio
    async def test_sends_auth_headers(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["app"] = request.headers.get("App-ID")
            return ok({"fields": []})

        async with make_api(handler, token="secret", app_id="bi-app") as api:
            await HttpSchemaService(api).get_table_schema(12)

        assert seen["url"] == "http://upstream.test/api/v1/config/tables/12"
        assert seen["auth"] == "Bearer secret"
        assert seen["app"] == "bi-app"

    @pytest.mark.asyncio
    async def test_no_auth_headers_by_default(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return ok({"fields": []})

        async with make_api(handler) as api:
            await HttpSchemaService(api).get_table_schema(1)

        assert "Authorization" not in seen["headers"]
        assert "App-ID" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_envelope_error_code(self):
        def handler(request):
            return httpx.Response(200, json={"code": 500, "message": "table locked", "data": None})

        async with make_api(handler) as api:
            with pytest.raises(ModelerError) as exc:
                await HttpSchemaService(api).get_table_schema(1)

        assert exc.value.code == ErrorCode.ERR_SERVICE_REJECTED
        assert exc.value.details == {"service": "schema", "service_code": 500}
        assert "table locked" in exc.value.message

    @pytest.mark.asyncio
    async def test_http_server_error(self):
        async with make_api(lambda request: httpx.Response(502, text="bad gateway")) as api:
            with pytest.raises(ModelerError) as exc:
                await HttpSchemaService(api).get_table_schema(1)
        assert exc.value.code == ErrorCode.ERR_SERVICE_UNAVAILABLE
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_api(handler) as api:
            with pytest.raises(ModelerError) as exc:
                await HttpDimensionService(api).get_dimension_columns(7)
        assert exc.value.code == ErrorCode.ERR_SERVICE_UNAVAILABLE
        assert exc.value.details["service"] == "dimension"

    @pytest.mark.asyncio
    async def test_not_an_envelope(self):
        async with make_api(lambda request: httpx.Response(200, json=[1, 2])) as api:
            with pytest.raises(ModelerError) as exc:
                await HttpSchemaService(api).get_table_schema(1)
        assert exc.value.code == ErrorCode.ERR_SERVICE_REJECTED

    def test_from_settings(self):
        settings = Settings(api_base_url="http://bi.test/api/v1/", api_token="t", app_id="a", request_timeout=3)
        api = ApiClient.from_settings(settings)
        assert api.base_url == "http://bi.test/api/v1"
        assert api.token == "t"
        assert api.timeout == 3


class TestServices:
    """Tests for payload parsing."""

    @pytest.mark.asyncio
    async def test_table_schema(self):
        def handler(request):
            return ok({"id": 1, "fields": [
                {"name": "order_id", "type": "bigint", "comment": "Order"},
                {"name": "amount", "type": "decimal"},
            ]})

        async with make_api(handler) as api:
            columns = await HttpSchemaService(api).get_table_schema(1)

        assert [(c.name, c.type) for c in columns] == [("order_id", "bigint"), ("amount", "decimal")]
        assert columns[0].comment == "Order"

    @pytest.mark.asyncio
    async def test_dimension_columns(self):
        def handler(request):
            assert request.url.path == "/api/v1/config/dimensions/7"
            return ok({"custom_columns": [{"name": "manager", "length": 50, "comment": "Owner"}]})

        async with make_api(handler) as api:
            columns = await HttpDimensionService(api).get_dimension_columns(7)

        assert columns[0].name == "manager"
        assert columns[0].max_length == 50

    @pytest.mark.asyncio
    async def test_model_service_verbs(self, definition):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "POST":
                body = json.loads(request.content)
                assert body["configuration"]["name"] == "orders"
                return ok({"id": 42})
            if request.method == "GET" and request.url.path.endswith("/models"):
                return ok({"list": [{"id": 42}], "total": 1})
            if request.method == "GET":
                return ok(definition.to_dict())
            return ok(None)

        async with make_api(handler) as api:
            service = HttpModelService(api)
            assert await service.create_model(definition.to_dict()) == 42
            await service.update_model(42, definition.to_dict())
            assert (await service.get_model(42))["model_code"] == "sales"
            assert await service.list_models() == [{"id": 42}]
            assert await service.delete_model(42)

        assert calls == [
            ("POST", "/api/v1/config/models"),
            ("PUT", "/api/v1/config/models/42"),
            ("GET", "/api/v1/config/models/42"),
            ("GET", "/api/v1/config/models"),
            ("DELETE", "/api/v1/config/models/42"),
        ]

    @pytest.mark.asyncio
    async def test_missing_model(self):
        async with make_api(lambda request: httpx.Response(404, json={"message": "no such model"})) as api:
            with pytest.raises(ModelerError) as exc:
                await HttpModelService(api).get_model(9)
        assert exc.value.code == ErrorCode.ERR_MODEL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_model_on_write(self, definition):
        async with make_api(lambda request: httpx.Response(404, json={"message": "no such model"})) as api:
            service = HttpModelService(api)
            with pytest.raises(ModelerError) as exc:
                await service.update_model(9, definition.to_dict())
            assert exc.value.code == ErrorCode.ERR_MODEL_NOT_FOUND

            with pytest.raises(ModelerError) as exc:
                await service.delete_model(9)
            assert exc.value.code == ErrorCode.ERR_MODEL_NOT_FOUND


class TestAgainstLocalApi:
    """The remote model service client talking to this application's own routes."""

    @pytest.mark.asyncio
    async def test_round_trip(self, app, definition):
        transport = httpx.ASGITransport(app=app)
        async with ApiClient("http://testserver/v1", transport=transport) as api:
            service = HttpModelService(api)
            model_id = await service.create_model(definition.to_dict())
            loaded = definition_from_document(await service.get_model(model_id))

            assert loaded.id == model_id
            assert loaded.tree == definition.tree

            assert await service.delete_model(model_id)
            with pytest.raises(ModelerError) as exc:
                await service.get_model(model_id)
            assert exc.value.code == ErrorCode.ERR_MODEL_NOT_FOUND
