"""Tests for the per-resource-type reconciliation pipeline."""

from __future__ import annotations

from typing import Any

import pytest
from api_mock import MockCollection, MockSingleton, api_error, resource_for

from tenantsync.client import ResourceEndpoints
from tenantsync.config import (
    POLICY_ALLOW_DELETE,
    POLICY_DRY_RUN,
    POLICY_EXCLUDED,
    POLICY_EXCLUDED_NAMES,
    POLICY_INCLUDED_ONLY,
    policy_from_mapping,
)
from tenantsync.differ import UpdateItem
from tenantsync.errors import (
    DuplicateIdentityError,
    FetchError,
    MutationError,
    ValidationError,
)
from tenantsync.executor import RateLimitedExecutor
from tenantsync.models import Role
from tenantsync.normalizer import OBFUSCATED_SECRET_VALUE
from tenantsync.reconciler import (
    ReconcilePhase,
    ReconciliationResult,
    Reconciler,
    RunReport,
    build_create_payload,
    build_update_payload,
    select_resources,
)
from tenantsync.resources import ResourceConfig


def make_reconciler(**policy: Any) -> Reconciler:
    executor = RateLimitedExecutor(concurrency_limit=3, frequency_limit=100)
    return Reconciler(executor=executor, policy=policy_from_mapping(policy))


@pytest.fixture
def roles() -> MockCollection:
    return MockCollection(
        [
            {"id": "rol_1", "name": "reader", "description": "Read"},
            {"id": "rol_2", "name": "writer", "description": "Write"},
            {"id": "rol_3", "name": "legacy", "description": "Old"},
        ]
    )


DESIRED_ROLES = [
    {"name": "reader", "description": "Read"},
    {"name": "writer", "description": "Write all the things"},
    {"name": "admin", "description": "Everything"},
]


class TestReconcile:
    """Tests for Reconciler.reconcile on a collection."""

    @pytest.mark.asyncio
    async def test_applies_changes_without_deletes(self, roles: MockCollection) -> None:
        """Test create and update; deletes are skipped unless allowed."""
        reconciler = make_reconciler()

        result = await reconciler.reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.success
        assert result.phase is ReconcilePhase.DONE
        assert (result.created, result.updated, result.deleted) == (1, 1, 0)
        assert result.skipped_deletes == 1
        assert roles.calls_of("delete") == []
        assert roles.names() == ["reader", "writer", "legacy", "admin"]
        assert roles.calls_of("update")[0].remote_id == "rol_2"
        assert roles.calls_of("update")[0].payload == {
            "name": "writer",
            "description": "Write all the things",
        }

    @pytest.mark.asyncio
    async def test_deletes_when_allowed(self, roles: MockCollection) -> None:
        reconciler = make_reconciler(**{POLICY_ALLOW_DELETE: True})

        result = await reconciler.reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.success
        assert result.deleted == 1
        assert result.skipped_deletes == 0
        assert roles.names() == ["reader", "writer", "admin"]

    @pytest.mark.asyncio
    async def test_apply_order(self, roles: MockCollection) -> None:
        """Test that deletes run before updates and updates before creates."""
        reconciler = make_reconciler(**{POLICY_ALLOW_DELETE: "true"})

        await reconciler.reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert [call.operation for call in roles.mutations] == ["delete", "update", "create"]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, roles: MockCollection) -> None:
        reconciler = make_reconciler(**{POLICY_ALLOW_DELETE: True})
        resource = resource_for(roles, type="roles")
        await reconciler.reconcile(resource, DESIRED_ROLES)
        mutations = len(roles.mutations)

        result = await reconciler.reconcile(resource, DESIRED_ROLES)

        assert result.success
        assert result.changes is not None and result.changes.is_empty
        assert len(roles.mutations) == mutations

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_mutations(self, roles: MockCollection) -> None:
        """Test that a dry run only reports the planned changes."""
        reconciler = make_reconciler(**{POLICY_DRY_RUN: True, POLICY_ALLOW_DELETE: True})

        result = await reconciler.reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.success
        assert result.dry_run
        assert roles.mutations == []
        assert result.changes is not None
        assert result.changes.counts() == {"create": 1, "update": 1, "delete": 1, "conflict": 0}
        assert (result.created, result.updated, result.deleted) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_undeclared_type_is_skipped(self, roles: MockCollection) -> None:
        """Test that a type missing from the desired state is left alone."""
        result = await make_reconciler().reconcile(resource_for(roles, type="roles"), None)

        assert result.skipped
        assert result.success
        assert roles.calls == []

    @pytest.mark.asyncio
    async def test_empty_on_both_sides(self) -> None:
        store = MockCollection()

        result = await make_reconciler().reconcile(resource_for(store), [])

        assert result.success
        assert result.changes is not None and result.changes.is_empty

    @pytest.mark.asyncio
    async def test_absent_type(self, roles: MockCollection) -> None:
        """Test that an unsupported type is recorded as absent, not failed."""
        roles.failures["list"] = api_error(403, "feature_not_enabled")

        result = await make_reconciler().reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.absent
        assert result.success
        assert roles.mutations == []

    @pytest.mark.asyncio
    async def test_fetch_failure(self, roles: MockCollection) -> None:
        roles.failures["list"] = api_error(500)

        result = await make_reconciler().reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.phase is ReconcilePhase.FAILED
        assert isinstance(result.errors[0], FetchError)
        assert not result.validation_failed
        assert roles.mutations == []

    @pytest.mark.asyncio
    async def test_partial_failure(self) -> None:
        """Test that successful updates are counted and creates are not started."""
        store = MockCollection(
            [
                {"id": "1", "name": "a", "v": 0},
                {"id": "2", "name": "b", "v": 0},
                {"id": "3", "name": "c", "v": 0},
            ]
        )
        store.item_failures["b"] = api_error(500, message="boom")
        desired = [{"name": n, "v": 1} for n in ("a", "b", "c", "d")]

        result = await make_reconciler().reconcile(resource_for(store, type="roles"), desired)

        assert result.phase is ReconcilePhase.FAILED
        assert result.updated == 2
        assert result.created == 0
        assert store.calls_of("create") == []
        assert len(result.errors) == 1
        error = result.errors[0]
        assert isinstance(error, MutationError)
        assert error.operation == "update"
        assert error.identity == "roles b"
        assert "Problem updating roles b" in str(error)
        assert error.__cause__ is not None

    @pytest.mark.asyncio
    async def test_excluded_names_are_untouched(self, roles: MockCollection) -> None:
        """Test that items managed elsewhere are neither created nor deleted."""
        reconciler = make_reconciler(
            **{
                POLICY_ALLOW_DELETE: True,
                POLICY_EXCLUDED_NAMES: {"roles": ["legacy", "admin"]},
            }
        )

        result = await reconciler.reconcile(resource_for(roles, type="roles"), DESIRED_ROLES)

        assert result.success
        assert (result.created, result.updated, result.deleted) == (0, 1, 0)
        assert roles.names() == ["reader", "writer", "legacy"]

    @pytest.mark.asyncio
    async def test_secret_placeholder_is_not_sent_back(self) -> None:
        store = MockCollection(
            [{"id": "1", "name": "hook", "url": "https://old", "sink": {"token": "real"}}]
        )
        resource = resource_for(store, sensitive_fields=("sink.token",))
        desired = [{"name": "hook", "url": "https://new", "sink": {"token": OBFUSCATED_SECRET_VALUE}}]

        result = await make_reconciler().reconcile(resource, desired)

        assert result.updated == 1
        assert store.calls_of("update")[0].payload == {"name": "hook", "url": "https://new", "sink": {}}

    @pytest.mark.asyncio
    async def test_empty_shaped_payload_is_not_counted(self) -> None:
        """Test that an update reshaped to nothing is neither sent nor counted."""
        store = MockCollection([{"id": "1", "name": "a", "v": 0}])
        resource = resource_for(store, shape_update=lambda payload, existing, policy: {})

        result = await make_reconciler().reconcile(resource, [{"name": "a", "v": 1}])

        assert result.success
        assert result.updated == 0
        assert store.calls_of("update") == []

    @pytest.mark.asyncio
    async def test_any_update_response_is_counted(self) -> None:
        """Test that string responses from the backend count as applied updates."""
        store = MockCollection([{"id": "1", "name": "a", "v": 0}])

        async def update(remote_id: str | None, payload: dict[str, Any]) -> str:
            return "nothing-to-send"

        resource = ResourceConfig(
            type="widgets",
            endpoints=ResourceEndpoints(list_page=store.list_page, update=update),
        )

        result = await make_reconciler().reconcile(resource, [{"name": "a", "v": 1}])

        assert result.success
        assert result.updated == 1


class TestValidation:
    """Tests for validation before any network call."""

    @pytest.mark.asyncio
    async def test_collection_must_be_list_of_mappings(self, roles: MockCollection) -> None:
        result = await make_reconciler().reconcile(
            resource_for(roles, type="roles"), ["reader", "writer"]
        )

        assert result.phase is ReconcilePhase.FAILED
        assert result.validation_failed
        assert roles.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_identities(self, roles: MockCollection) -> None:
        """Test that duplicated names fail the type before fetching."""
        desired = [{"name": "reader"}, {"name": "reader"}]

        result = await make_reconciler().reconcile(resource_for(roles, type="roles"), desired)

        error = result.errors[0]
        assert isinstance(error, DuplicateIdentityError)
        assert error.identities == ["reader"]
        assert "Names must be unique" in str(error)
        assert roles.calls == []

    @pytest.mark.asyncio
    async def test_missing_identity(self, roles: MockCollection) -> None:
        result = await make_reconciler().reconcile(
            resource_for(roles, type="roles"), [{"description": "nameless"}]
        )

        assert result.validation_failed
        assert roles.calls == []

    @pytest.mark.asyncio
    async def test_schema_violation(self, roles: MockCollection) -> None:
        resource = resource_for(roles, type="roles", schema=Role)

        result = await make_reconciler().reconcile(resource, [{"name": "ok"}, {"name": ""}])

        assert result.validation_failed
        assert "[1] name" in str(result.errors[0])
        assert roles.calls == []

    @pytest.mark.asyncio
    async def test_validate_hook(self, roles: MockCollection) -> None:
        def reject(desired: Any, policy: Any) -> None:
            raise ValidationError("rejected by hook", resource_type="roles")

        resource = resource_for(roles, type="roles", validate_hook=reject)

        result = await make_reconciler().reconcile(resource, DESIRED_ROLES)

        assert result.validation_failed
        assert roles.calls == []


class TestSingletonReconcile:
    """Tests for Reconciler.reconcile on singleton settings."""

    @pytest.mark.asyncio
    async def test_updates_declared_keys(self) -> None:
        store = MockSingleton({"friendly_name": "Old", "support_email": "a@acme.test"})
        resource = resource_for(store, type="tenant", compare_desired_keys_only=True)

        result = await make_reconciler().reconcile(resource, {"friendly_name": "Acme"})

        assert result.success
        assert result.updated == 1
        assert store.calls_of("update")[0].remote_id is None
        assert store.state == {"friendly_name": "Acme", "support_email": "a@acme.test"}

    @pytest.mark.asyncio
    async def test_in_sync(self) -> None:
        store = MockSingleton({"friendly_name": "Acme", "support_email": "a@acme.test"})
        resource = resource_for(store, type="tenant", compare_desired_keys_only=True)

        result = await make_reconciler().reconcile(resource, {"friendly_name": "Acme"})

        assert result.success
        assert store.calls_of("update") == []

    @pytest.mark.asyncio
    async def test_must_be_mapping(self) -> None:
        store = MockSingleton()

        result = await make_reconciler().reconcile(resource_for(store, type="tenant"), ["x"])

        assert result.validation_failed
        assert store.calls == []


class TestReconcileAll:
    """Tests for Reconciler.reconcile_all."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, roles: MockCollection) -> None:
        """Test that one failing type does not stop the others."""
        broken = MockCollection()
        broken.failures["list"] = api_error(500)
        resources = [
            resource_for(broken, type="broken", order=10),
            resource_for(roles, type="roles", order=20),
        ]

        report = await make_reconciler().reconcile_all(
            {"broken": [{"name": "x"}], "roles": DESIRED_ROLES}, resources
        )

        assert [r.resource_type for r in report.results] == ["broken", "roles"]
        assert not report.success
        assert report.get("broken").phase is ReconcilePhase.FAILED
        assert report.get("roles").success
        assert report.totals()["failed_types"] == 1
        assert report.totals()["created"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, roles: MockCollection) -> None:
        def explode(desired: Any, policy: Any) -> None:
            raise RuntimeError("bug in hook")

        resources = [
            resource_for(roles, type="first", validate_hook=explode),
            resource_for(MockCollection(), type="second"),
        ]

        report = await make_reconciler().reconcile_all({"first": [], "second": []}, resources)

        first = report.get("first")
        assert first is not None
        assert first.phase is ReconcilePhase.FAILED
        assert isinstance(first.errors[0], RuntimeError)
        assert report.get("second").success

    @pytest.mark.asyncio
    async def test_processing_order(self) -> None:
        resources = [
            resource_for(MockCollection(), type="late", order=100),
            resource_for(MockCollection(), type="early", order=10),
            resource_for(MockCollection(), type="middle"),
        ]

        report = await make_reconciler().reconcile_all({}, resources)

        assert [r.resource_type for r in report.results] == ["early", "middle", "late"]
        assert all(r.skipped for r in report.results)


class TestSelectResources:
    """Tests for select_resources."""

    def test_included_only(self) -> None:
        resources = [resource_for(type=t) for t in ("roles", "tenant", "logStreams")]
        policy = policy_from_mapping({POLICY_INCLUDED_ONLY: ["tenant", "roles"]})

        assert [r.type for r in select_resources(resources, policy)] == ["roles", "tenant"]

    def test_excluded_from_string(self) -> None:
        resources = [resource_for(type=t) for t in ("roles", "tenant", "logStreams")]
        policy = policy_from_mapping({POLICY_EXCLUDED: "tenant, logStreams"})

        assert [r.type for r in select_resources(resources, policy)] == ["roles"]

    def test_sort_is_stable(self) -> None:
        resources = [
            resource_for(type="b", order=50),
            resource_for(type="a", order=50),
            resource_for(type="z", order=1),
        ]

        selected = select_resources(resources, policy_from_mapping({}))

        assert [r.type for r in selected] == ["z", "b", "a"]


class TestPayloads:
    """Tests for update and create payload construction."""

    def test_update_strips_create_only_fields_and_id(self) -> None:
        resource = resource_for(strip_update_fields=("type",))
        update = UpdateItem(
            remote_id="1",
            desired={"id": "1", "name": "a", "type": "http", "status": "active"},
            existing={"id": "1", "name": "a", "type": "http", "status": "paused"},
        )

        payload = build_update_payload(resource, update, False, policy_from_mapping({}))

        assert payload == {"name": "a", "status": "active"}

    def test_patch_semantics(self) -> None:
        resource = resource_for(patch_semantics=True)
        update = UpdateItem(
            remote_id="1",
            desired={"name": "a", "description": "new", "color": "red"},
            existing={"id": "1", "name": "a", "description": "old", "color": "red"},
        )

        payload = build_update_payload(resource, update, False, policy_from_mapping({}))

        assert payload == {"description": "new"}

    @pytest.mark.parametrize(
        ("allow_delete", "expected"),
        [
            (True, {"name": "a", "metadata": {"keep": "1", "gone": None}}),
            (False, {"name": "a", "metadata": {"keep": "1"}}),
        ],
    )
    def test_object_field_removed_keys(self, allow_delete: bool, expected: dict) -> None:
        """Test that removed sub-keys are nulled only when deletes are allowed."""
        resource = resource_for(object_fields=("metadata",))
        update = UpdateItem(
            remote_id="1",
            desired={"name": "a", "metadata": {"keep": "1"}},
            existing={"id": "1", "name": "a", "metadata": {"keep": "1", "gone": "2"}},
        )

        payload = build_update_payload(resource, update, allow_delete, policy_from_mapping({}))

        assert payload == expected

    @pytest.mark.parametrize(
        ("allow_delete", "expected"),
        [
            (True, {"name": "a", "metadata": {}}),
            (False, {"name": "a"}),
        ],
    )
    def test_object_field_emptied(self, allow_delete: bool, expected: dict) -> None:
        """Test that an emptied object field is sent as {} only when deletes are allowed."""
        resource = resource_for(object_fields=("metadata",))
        update = UpdateItem(
            remote_id="1",
            desired={"name": "a", "metadata": None},
            existing={"id": "1", "name": "a", "metadata": {"gone": "2"}},
        )

        payload = build_update_payload(resource, update, allow_delete, policy_from_mapping({}))

        assert payload == expected

    def test_create_strips_rejected_fields(self) -> None:
        resource = resource_for(
            strip_create_fields=("status",),
            shape_create=lambda payload, policy: {**payload, "shaped": True},
        )

        payload = build_create_payload(
            resource, {"id": "x", "name": "a", "status": "active"}, policy_from_mapping({})
        )

        assert payload == {"name": "a", "shaped": True}


class TestRunReport:
    """Tests for RunReport and ReconciliationResult summaries."""

    def test_totals_and_summary(self) -> None:
        ok = ReconciliationResult(resource_type="roles", phase=ReconcilePhase.DONE, created=2)
        failed = ReconciliationResult(
            resource_type="tenant",
            phase=ReconcilePhase.FAILED,
            errors=[ValidationError("bad", resource_type="tenant")],
        )
        report = RunReport(results=[ok, failed])

        assert report.totals() == {
            "created": 2,
            "updated": 0,
            "deleted": 0,
            "skipped_deletes": 0,
            "failed_types": 1,
        }
        assert report.failed == [failed]
        assert report.get("missing") is None
        summary = failed.to_summary()
        assert summary["phase"] == "failed"
        assert summary["errors"] == ["bad"]
        assert failed.validation_failed
