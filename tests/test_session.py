"""
Tests for the editor session: selection, structural edits and schema loading.
"""

import asyncio

import pytest

from modeler.errors import ErrorCode, ModelerError
from modeler.modeling.model_tree import (
    Cardinality, DimensionLink, ModelDefinition, ModelNode, ModelTree,
    get_node_at_path,
)
from modeler.modeling.schema_cache import FetchRequest
from modeler.modeling.session import EditorSession, SessionRegistry, preload_requests


class TestSelection:
    """Tests for selecting nodes."""

    @pytest.mark.asyncio
    async def test_select_loads_node_and_parent(self, session, schema_service):
        selection = await session.select((0, 0))

        assert selection.node.label == "regions"
        assert session.selected_path == (0, 0)
        assert sorted(schema_service.calls) == [2, 3]
        assert sorted(session.schema_cache.keys()) == ["/0", "/0/0"]
        assert not session.busy

        choices = session.field_choices()
        assert [f.name for f in choices.parent_fields] == ["customer_id", "name", "region_code"]
        assert [f.name for f in choices.child_fields] == ["region_code", "region_name"]

    @pytest.mark.asyncio
    async def test_reselect_uses_cache(self, session, schema_service):
        await session.select((0,))
        await session.select((0,))
        assert sorted(schema_service.calls) == [1, 2]

    @pytest.mark.asyncio
    async def test_select_loads_linked_dimensions(self, session, dimension_service):
        await session.select(())

        assert dimension_service.calls == [7]
        assert session.field_choices().dimension_fields[0][-2:] == ("region_level", "manager")

    @pytest.mark.asyncio
    async def test_stale_path_clears_selection(self, session):
        await session.select((1,))

        with pytest.raises(ModelerError) as exc:
            await session.select((0, 4))

        assert exc.value.code == ErrorCode.ERR_PATH_NOT_FOUND
        assert session.selected_path is None
        assert session.notices[-1].code == "ERR_1001"

    @pytest.mark.asyncio
    async def test_selection_follows_node_after_sibling_delete(self, session):
        await session.select((1,))
        session.delete((0,), confirmed=True)

        assert session.selected_path == (0,)
        assert session.selected_node.label == "order_items"

    @pytest.mark.asyncio
    async def test_deleting_selected_node_clears_selection(self, session):
        await session.select((0, 0))
        session.delete((0,), confirmed=True)

        assert session.selected_path is None
        assert session.notices[-1].code == "ERR_1002"

    @pytest.mark.asyncio
    async def test_select_on_empty_tree(self, session):
        session.delete((), confirmed=True)
        with pytest.raises(ModelerError):
            await session.select(())


class TestStructuralEdits:
    """Tests for add / delete through the session."""

    def test_add_child_needs_selection(self, session):
        with pytest.raises(ModelerError) as exc:
            session.add_child()
        assert exc.value.code == ErrorCode.ERR_NO_SELECTION

    @pytest.mark.asyncio
    async def test_add_child_under_selection(self, session):
        await session.select((1,))
        result = session.add_child()

        assert result.path == (1, 0)
        assert session.selected_path == (1,)
        assert get_node_at_path(session.tree, (1, 0)).relationship.cardinality == Cardinality.ONE_TO_ONE

    def test_add_child_without_root(self, session):
        session.delete((), confirmed=True)
        with pytest.raises(ModelerError) as exc:
            session.add_child(())
        assert exc.value.code == ErrorCode.ERR_NO_ROOT

    def test_add_root_only_when_empty(self, session):
        with pytest.raises(ModelerError) as exc:
            session.add_root()
        assert exc.value.code == ErrorCode.ERR_ROOT_EXISTS

        session.delete((), confirmed=True)
        session.add_root()
        assert session.tree.root == ModelNode()

    def test_delete_needs_selection_and_confirmation(self, session):
        with pytest.raises(ModelerError) as exc:
            session.delete()
        assert exc.value.code == ErrorCode.ERR_NO_SELECTION

        with pytest.raises(ModelerError) as exc:
            session.delete((1,))
        assert exc.value.code == ErrorCode.ERR_CONFIRMATION_REQUIRED
        assert get_node_at_path(session.tree, (1,)) is not None

    @pytest.mark.asyncio
    async def test_delete_forgets_deleted_nodes(self, session):
        await session.preload()
        session.delete((0,), confirmed=True)

        assert "/0/0" not in session.schema_cache
        assert session.schema_cache.fields_for(session.tree, (0,)) == ()

    @pytest.mark.asyncio
    async def test_shifted_nodes_are_refetched_under_new_paths(self, session, schema_service):
        await session.preload()
        result = session.delete((0,), confirmed=True)
        applied = await session.load_schemas(result.fetches)

        assert applied == 1
        assert [f.name for f in session.schema_cache.fields_for(session.tree, (0,))] == ["order_id", "sku", "qty"]
        # Served from the table memo, no second call for table 4.
        assert schema_service.calls.count(4) == 1


class TestNodeEdits:
    """Tests for node configuration edits."""

    @pytest.mark.asyncio
    async def test_choose_table_loads_schema(self, session):
        await session.select((1,))
        result = session.choose_table(3, "regions")
        await session.load_schemas(result.fetches)

        node = session.selected_node
        assert node.source_table_id == 3
        assert node.label == "regions"
        assert session.schema_cache.get((1,)).table_id == 3

    @pytest.mark.asyncio
    async def test_table_switch_clears_stale_dimension_field(self, schema_service, dimension_service):
        root = ModelNode(
            source_table_id=1,
            dimension_links=(
                DimensionLink(7, 1, "region_code", "retired_column"),
                DimensionLink(8, 1, "region_code", "segment"),
                DimensionLink(7, 1, "region_code", "code"),
            ),
        )
        session = EditorSession(
            schema_service, dimension_service,
            definition=ModelDefinition(tree=ModelTree(root=root)),
        )
        await session.select(())
        session.choose_table(2)

        fields = [link.dimension_field for link in session.tree.root.dimension_links]
        assert fields == ["", "segment", "code"]

    @pytest.mark.asyncio
    async def test_generic_table_update_clears_stale_dimension_field(self, schema_service, dimension_service):
        root = ModelNode(
            source_table_id=1,
            dimension_links=(
                DimensionLink(7, 1, "region_code", "retired_column"),
                DimensionLink(7, 1, "region_code", "manager"),
            ),
        )
        session = EditorSession(
            schema_service, dimension_service,
            definition=ModelDefinition(tree=ModelTree(root=root)),
        )
        await session.select(())
        result = session.update({"source_table_id": 2}, path=())
        await session.load_schemas(result.fetches)

        assert session.tree.root.source_table_id == 2
        assert [link.dimension_field for link in session.tree.root.dimension_links] == ["", "manager"]
        assert session.schema_cache.get(()).table_id == 2

    @pytest.mark.asyncio
    async def test_relationship_edits(self, session):
        await session.select((1,))
        session.add_field_mapping("customer_id", "sku")
        session.set_mapping_field(1, "child", "order_id")
        session.set_mapping_field(1, "parent", "order_id")
        session.remove_field_mapping(0)
        session.set_cardinality(Cardinality.ONE_TO_ONE)

        relationship = session.selected_node.relationship
        assert relationship.cardinality == Cardinality.ONE_TO_ONE
        assert [(m.parent_field, m.child_field) for m in relationship.field_mappings] == [("order_id", "order_id")]

    def test_relationship_on_root_is_rejected(self, session):
        with pytest.raises(ModelerError) as exc:
            session.add_field_mapping("a", "b", path=())
        assert exc.value.code == ErrorCode.ERR_ROOT_RELATIONSHIP

    def test_dimension_link_edits(self, session):
        session.add_dimension_link(path=(1,))
        session.update_dimension_link(0, {"dimension_id": 8, "table_field": "sku",
                                          "dimension_field": "segment", "scope": "leaves"}, path=(1,))
        link = get_node_at_path(session.tree, (1,)).dimension_links[0]
        assert (link.dimension_id, link.table_field, link.dimension_field) == (8, "sku", "segment")

        session.remove_dimension_link(0, path=(1,))
        assert get_node_at_path(session.tree, (1,)).dimension_links == ()

    def test_update_rejects_unknown_fields(self, session):
        before = session.tree
        with pytest.raises(ModelerError) as exc:
            session.update({"uid": "x"}, path=(1,))
        assert exc.value.code == ErrorCode.ERR_INVALID_PATCH
        assert session.tree is before


class TestSchemaLoading:
    """Tests for asynchronous schema fetches."""

    @pytest.mark.asyncio
    async def test_stale_fetch_after_deletion_mutates_nothing(self, schema_service, dimension_service):
        tree = ModelTree(root=ModelNode(
            source_table_id=1,
            children=(ModelNode(
                source_table_id=2,
                children=(ModelNode(source_table_id=3), ModelNode(source_table_id=4)),
            ),),
        ))
        session = EditorSession(
            schema_service, dimension_service, definition=ModelDefinition(tree=tree)
        )
        target = get_node_at_path(session.tree, (0, 1))
        release = schema_service.gate(4)

        task = asyncio.ensure_future(
            session.load_schemas([FetchRequest((0, 1), target.uid, 4)])
        )
        await schema_service.waiting.wait()
        assert session.pending_count == 1

        session.delete((0, 1), confirmed=True)
        session.add_child((0,))
        snapshot = session.tree

        release.set()
        applied = await task

        assert applied == 0
        assert session.tree is snapshot
        assert "/0/1" not in session.schema_cache
        assert session.pending_count == 0

    @pytest.mark.asyncio
    async def test_busy_while_selected_node_is_loading(self, session, schema_service):
        release = schema_service.gate(4)
        task = asyncio.ensure_future(session.select((1,)))
        await schema_service.waiting.wait()

        assert session.busy

        release.set()
        await task
        assert not session.busy

    @pytest.mark.asyncio
    async def test_identical_fetches_share_one_call(self, session, schema_service):
        node = get_node_at_path(session.tree, (1,))
        request = FetchRequest((1,), node.uid, 4)

        applied = await session.load_schemas([request, request])

        assert applied == 2
        assert schema_service.calls == [4]

    @pytest.mark.asyncio
    async def test_failed_fetch_leaves_notice(self, session, schema_service):
        schema_service.failing.add(2)
        before = session.tree

        await session.select((0,))

        assert session.tree is before
        assert "/0" not in session.schema_cache
        assert session.notices[-1].code == "ERR_3001"
        assert session.field_choices().child_fields == ()

    @pytest.mark.asyncio
    async def test_preload_fetches_every_table(self, session, dimension_service):
        applied = await session.preload()

        assert applied == 4
        assert sorted(session.schema_cache.keys()) == ["/", "/0", "/0/0", "/1"]
        assert dimension_service.calls == [7]

    def test_preload_requests(self, session):
        requests = preload_requests(session.tree)
        assert [r.table_id for r in requests] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_validate_after_preload(self, session):
        await session.preload()
        assert session.validate().valid


class TestSessionState:
    """Tests for session bookkeeping."""

    def test_drain_notices(self, session):
        session.notify("info", "hello")
        assert [n.message for n in session.drain_notices()] == ["hello"]
        assert session.notices == []

    @pytest.mark.asyncio
    async def test_replace_definition_resets_state(self, session):
        await session.select((0,))
        session.replace_definition(ModelDefinition())

        assert session.selected_path is None
        assert len(session.schema_cache) == 0
        assert session.tree.root == ModelNode()

    def test_to_dict(self, session):
        state = session.to_dict()
        assert state["id"] == session.id
        assert state["selection"] is None
        assert state["definition"]["model_code"] == "sales"

    def test_registry(self, session):
        registry = SessionRegistry()
        registry.add(session)

        assert registry.get(session.id) is session
        assert len(registry) == 1
        assert registry.remove(session.id)
        with pytest.raises(ModelerError) as exc:
            registry.get(session.id)
        assert exc.value.code == ErrorCode.ERR_SESSION_NOT_FOUND
