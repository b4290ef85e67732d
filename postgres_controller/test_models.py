"""Resource parsing, status conditions and deterministic naming"""

import pytest

from .errors import PermanentError
from .models import (MAX_IDENTIFIER_BYTES, DatabaseStatus, ManagedDatabase, Phase, RoleAttributes,
                     default_external_name, external_names, split_key)


def make(namespace="shop", name="orders", spec=None):
    return ManagedDatabase.from_object({"metadata": {"namespace": namespace, "name": name}, "spec": spec or {}})


def test_default_names_are_deterministic():
    """Same identity, same names, no matter how often they are derived"""
    print("🧪 Testing deterministic naming...")
    first = external_names(make())
    second = external_names(make())

    assert first == second
    assert first.role == first.database == "shop-orders"
    print("✅ Naming tests passed!")


def test_long_names_are_shortened_with_stable_suffix():
    name = "x" * 80
    derived = default_external_name("shop", name)

    assert len(derived.encode()) <= MAX_IDENTIFIER_BYTES
    assert derived == default_external_name("shop", name)
    assert derived != default_external_name("shop", name + "y"), "Distinct identities must not collide"


def test_explicit_names_win():
    names = external_names(make(spec={"owner": "app-role", "databaseName": "app-db"}))
    assert names.role == "app-role"
    assert names.database == "app-db"


@pytest.mark.parametrize("spec,reason", [
    ({"owner": "pg_monitor"}, "InvalidName"),
    ({"databaseName": "a" * 64}, "InvalidName"),
    ({"owner": 'bad"name'}, "InvalidName"),
    ({"owner": "postgres"}, "ReservedName"),
    ({"databaseName": "template1"}, "ReservedName"),
    ({"privileges": {"createDb": "yes"}}, "InvalidSpec"),
    ({"privileges": ["createDb"]}, "InvalidSpec"),
    ({"retainOnDelete": "false"}, "InvalidSpec"),
    ({"secret": "orders-creds"}, "InvalidSpec"),
    ({"owner": 42}, "InvalidSpec"),
    ({"password": {"value": ""}}, "InvalidSpec"),
    ({"password": {"value": "a", "fromSecret": {"name": "s", "key": "k"}}}, "InvalidSpec"),
    ({"password": {"fromSecret": {"name": "s"}}}, "InvalidSpec"),
])
def test_invalid_names_are_permanent(spec, reason):
    with pytest.raises(PermanentError) as excinfo:
        external_names(make(spec=spec), reserved_roles=frozenset({"postgres"}))
    assert excinfo.value.reason == reason


def test_role_attributes_defaults():
    attributes = RoleAttributes.from_dict(None)
    assert attributes.can_login
    assert not (attributes.create_db or attributes.create_role or attributes.bypass_rls or attributes.superuser)
    assert RoleAttributes.from_dict(attributes.to_dict()) == attributes


def test_resource_parsing():
    resource = ManagedDatabase.from_object({
        "metadata": {
            "namespace": "shop", "name": "orders", "generation": 4, "uid": "abc",
            "resourceVersion": "12", "finalizers": ["postgres-controller.io/cleanup"],
            "deletionTimestamp": "2026-01-01T00:00:00Z",
        },
        "spec": {"retainOnDelete": True, "secret": {"name": "creds", "namespaces": ["billing"]}},
        "status": {"phase": "Ready", "secretRef": {"name": "creds", "namespace": "shop"}},
    })

    assert resource.key == "shop/orders"
    assert resource.deleting
    assert resource.generation == 4
    assert resource.secret_name() == "creds"
    assert resource.parsed_spec().retain_on_delete
    assert resource.parsed_spec().secret.namespaces == ["billing"]
    assert resource.status.phase == Phase.READY
    assert resource.owner_reference()["uid"] == "abc"
    assert make().secret_name() == "database-orders-secret"


def test_condition_transition_time_kept_until_status_flips():
    status = DatabaseStatus()
    status.set_condition("Ready", False, "Provisioning", "creating role")
    first = status.condition("Ready")
    first.last_transition_time = "2026-01-01T00:00:00Z"

    status.set_condition("Ready", False, "DatabaseUnavailable", "timeout")
    assert status.condition("Ready").last_transition_time == "2026-01-01T00:00:00Z"
    assert status.condition("Ready").reason == "DatabaseUnavailable"

    status.set_condition("Ready", True, "Reconciled")
    assert status.condition("Ready").last_transition_time != "2026-01-01T00:00:00Z"
    assert len(status.conditions) == 1


def test_status_round_trip():
    status = DatabaseStatus(phase=Phase.FAILED, observed_generation=2, failed_generation=3,
                            last_error={"class": "PermanentError", "message": "boom"})
    assert DatabaseStatus.from_dict(status.to_dict()) == status


@pytest.mark.parametrize("key", ["orders", "/orders", "shop/", "a/b/c"])
def test_split_key_rejects_malformed_keys(key):
    with pytest.raises(ValueError):
        split_key(key)


def test_long_multibyte_names_fit_identifier_limit():
    name = "ü" * 40
    derived = default_external_name("shop", name)

    assert len(derived.encode()) <= MAX_IDENTIFIER_BYTES
    assert derived.startswith("shop-ü")


def test_password_sources():
    inline = make(spec={"password": {"value": "chosen"}}).parsed_spec().password
    assert inline.value == "chosen" and inline.from_secret is None

    ref = make(spec={"password": {"fromSecret": {"name": "admin", "key": "pw"}}}).parsed_spec().password
    assert ref.value is None
    assert (ref.from_secret.name, ref.from_secret.key) == ("admin", "pw")

    assert make().parsed_spec().password is None
