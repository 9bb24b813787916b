"""
Pytest configuration and shared fixtures for Modeler tests.
"""

import asyncio
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from modeler.errors import service_unavailable
from modeler.modeling.model_store import ModelStore
from modeler.modeling.model_tree import (
    Cardinality, DimensionLink, DimensionScope, FieldMapping, ModelDefinition,
    ModelNode, ModelTree, Relationship,
)
from modeler.modeling.persistence import LocalModelService
from modeler.modeling.schema_cache import ColumnInfo, DimensionColumn
from modeler.modeling.session import EditorSession, SessionRegistry
from modeler.services.base import DimensionService, SchemaService


TABLES: Dict[int, List[str]] = {
    1: ["order_id", "customer_id", "region_code", "amount"],  # orders
    2: ["customer_id", "name", "region_code"],                 # customers
    3: ["region_code", "region_name"],                         # regions
    4: ["order_id", "sku", "qty"],                             # order_items
}

DIMENSIONS: Dict[int, List[str]] = {
    7: ["region_level", "manager"],
    8: ["segment"],
}


class FakeSchemaService(SchemaService):
    """In-memory schema service that records every call."""

    def __init__(self, tables: Optional[Dict[int, List[str]]] = None):
        self.tables = dict(tables or TABLES)
        self.calls: List[int] = []
        self.failing = set()
        self.gates: Dict[int, asyncio.Event] = {}
        self.waiting: Optional[asyncio.Event] = None

    def gate(self, table_id: int) -> asyncio.Event:
        """Hold fetches of ``table_id`` until the returned event is set."""
        self.gates[table_id] = asyncio.Event()
        self.waiting = asyncio.Event()
        return self.gates[table_id]

    async def get_table_schema(self, table_id: int) -> List[ColumnInfo]:
        self.calls.append(table_id)
        gate = self.gates.get(table_id)
        if gate is not None:
            self.waiting.set()
            await gate.wait()
        if table_id in self.failing:
            raise service_unavailable("schema", "connection refused")
        return [ColumnInfo(name=n, type="varchar") for n in self.tables.get(table_id, [])]


class FakeDimensionService(DimensionService):
    """In-memory dimension service."""

    def __init__(self, dimensions: Optional[Dict[int, List[str]]] = None):
        self.dimensions = dict(dimensions or DIMENSIONS)
        self.calls: List[int] = []

    async def get_dimension_columns(self, dimension_id: int) -> List[DimensionColumn]:
        self.calls.append(dimension_id)
        return [
            DimensionColumn(name=n, comment=n.replace("_", " "), max_length=32)
            for n in self.dimensions.get(dimension_id, [])
        ]


def sample_tree() -> ModelTree:
    """
    Three-level tree:

        /      orders        (dimension link on region_code, descendants)
        /0     customers     1:1 customer_id
        /0/0   regions       1:n region_code, name -> region_name
        /1     order_items   1:n order_id
    """
    regions = ModelNode(
        source_table_id=3,
        label="regions",
        relationship=Relationship(
            cardinality=Cardinality.ONE_TO_MANY,
            field_mappings=(
                FieldMapping("region_code", "region_code"),
                FieldMapping("name", "region_name"),
            ),
        ),
    )
    customers = ModelNode(
        source_table_id=2,
        label="customers",
        relationship=Relationship(
            cardinality=Cardinality.ONE_TO_ONE,
            field_mappings=(FieldMapping("customer_id", "customer_id"),),
        ),
        children=(regions,),
    )
    order_items = ModelNode(
        source_table_id=4,
        label="order_items",
        relationship=Relationship(
            cardinality=Cardinality.ONE_TO_MANY,
            field_mappings=(FieldMapping("order_id", "order_id"),),
        ),
    )
    root = ModelNode(
        source_table_id=1,
        label="orders",
        dimension_links=(
            DimensionLink(
                dimension_id=7,
                dimension_item_id=100,
                table_field="region_code",
                dimension_field="region_level",
                scope=DimensionScope.DESCENDANTS,
            ),
        ),
        children=(customers, order_items),
    )
    return ModelTree(root=root)


def sample_definition() -> ModelDefinition:
    return ModelDefinition(
        code="sales",
        display_name="Sales",
        description="Orders with customers and regions",
        parent_id=3,
        tree=sample_tree(),
    )


@pytest.fixture
def schema_service():
    return FakeSchemaService()


@pytest.fixture
def dimension_service():
    return FakeDimensionService()


@pytest.fixture
def session(schema_service, dimension_service):
    """Editor session on the sample definition, nothing loaded yet."""
    return EditorSession(schema_service, dimension_service, definition=sample_definition())


@pytest.fixture
def store(tmp_path):
    return ModelStore(str(tmp_path / "models.db"))


@pytest.fixture
def app(store, schema_service, dimension_service):
    """The FastAPI app wired to fakes and a temporary store."""
    from modeler.main import app
    from modeler.modeling import routes

    registry = SessionRegistry()
    app.dependency_overrides[routes.get_store] = lambda: store
    app.dependency_overrides[routes.get_registry] = lambda: registry
    app.dependency_overrides[routes.get_schema_service] = lambda: schema_service
    app.dependency_overrides[routes.get_dimension_service] = lambda: dimension_service
    app.dependency_overrides[routes.get_model_service] = lambda: LocalModelService(store)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def tree():
    return sample_tree()


@pytest.fixture
def definition():
    return sample_definition()
