"""Controller wiring, bootstrap and operator enable/disable"""

from unittest.mock import patch

import psycopg2
import pytest
from kubernetes.config import ConfigException

from .config import Config
from .runtime import PostgresController


def make_config():
    return Config.load(environ={"APPLY_CRD": "true", "WORKERS": "1"})


@pytest.fixture
def controller(kube, db, session):
    config = make_config()
    session.add_role(config.DB_USER, create_role=True, create_db=True)
    controller = PostgresController(config, kube=kube, db=db)
    yield controller
    controller.disable()


def test_bootstrap_installs_auth_hook(controller, kube, session):
    print("🧪 Testing controller bootstrap...")
    controller.bootstrap()

    assert "create_login_role" in session.mutations
    assert controller.health.bootstrapped
    assert kube.crds == [], "The CRD is applied when the operator is enabled"
    print("✅ Bootstrap tests passed!")


@patch('postgres_controller.runtime.signal.signal')
def test_failed_bootstrap_exits_without_starting(mock_signal, controller, db):
    db.session_failure = psycopg2.OperationalError("could not connect to server")

    with patch.object(controller, "start") as start:
        assert controller.run() == 1
        start.assert_not_called()

    assert db.closed, "Pool should be released on a failed start"
    assert not controller.health.bootstrapped


def test_enable_and_disable_operator(controller, kube):
    print("🧪 Testing operator enable/disable...")
    controller.bootstrap()

    assert controller.enable(), "Operator should start with a working Kubernetes client"
    assert controller.operator_running
    assert kube.crds[0]["kind"] == "CustomResourceDefinition"
    assert controller.health.healthy() == (True, "ok")

    assert controller.disable()
    assert not controller.operator_running
    assert not controller.queue.is_shut_down, "Disabling must keep the queue for the next enable"
    assert controller.health.healthy() == (True, "ok"), "A disabled operator is not a liveness failure"

    assert controller.enable()
    assert controller.operator_running
    assert len(kube.crds) == 1, "CRD should be applied once per process"
    print("✅ Operator enable/disable tests passed!")


def test_operator_waits_for_kubeconfig(kube, db):
    print("🧪 Testing start without a kubeconfig...")
    controller = PostgresController(make_config(), db=db)
    try:
        with patch('postgres_controller.runtime.KubernetesClient',
                   side_effect=ConfigException("Invalid kube-config file. No configuration found.")):
            assert not controller.enable(), "Enable should fail without Kubernetes configuration"
        assert not controller.operator_running
        assert controller.reconciler is None

        with patch('postgres_controller.runtime.KubernetesClient', return_value=kube):
            assert controller.enable(), "Enable should succeed once the kubeconfig exists"
        assert controller.operator_running
        assert controller.kube is kube
    finally:
        controller.disable()
    print("✅ Deferred start tests passed!")


def test_stop_request_prevents_enable(controller):
    controller.request_stop()

    assert controller.stop_event.is_set()
    assert not controller.enable(), "A stopping controller must not start the operator"
