"""Process wiring: bootstrap, operator (worker pool and watcher), probe and Management API"""

import signal
import threading
from typing import Optional

import uvicorn
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from . import crd
from .api import Health, create_app
from .bootstrap import ensure_auth_hook
from .config import Config
from .database import DatabaseClient
from .errors import ControllerError
from .kube import KubernetesClient
from .log import GREEN, RESET, get_logger
from .metrics import Metrics
from .reconciler import Reconciler
from .scheduler import Scheduler, WorkQueue
from .store import StatusStore
from .vault import CredentialVault
from .watcher import Watcher

logger = get_logger("runtime")

SHUTDOWN_TIMEOUT = 30.0


class PostgresController:
    """
    Main controller process

    Owns every long-running component and the shutdown event they share.
    The operator part (watcher and workers) can be switched off and on at
    runtime; the Management API and the readiness check keep running either
    way. Without a usable kubeconfig the process starts with the operator
    disabled and waits to be enabled.
    """

    def __init__(self, config: Config, kube=None, db: Optional[DatabaseClient] = None):
        self.config = config
        self.stop_event = threading.Event()
        self.kube = kube
        self.db = db or DatabaseClient(config, self.stop_event)

        self.store = StatusStore()
        self.queue = WorkQueue(config.BACKOFF_MIN, config.BACKOFF_MAX)
        self.metrics = Metrics(databases_managed=lambda: len(self.store), queue_depth=self.queue.depth)
        self.vault: Optional[CredentialVault] = None
        self.reconciler: Optional[Reconciler] = None
        self.scheduler: Optional[Scheduler] = None
        self.watcher: Optional[Watcher] = None
        self._enabled = False
        self._crd_applied = False
        self._operator_lock = threading.Lock()

        self.health = Health(config.READINESS_WINDOW)
        # A deliberately disabled operator is not a liveness failure
        self.health.scheduler_running = lambda: not self._enabled or self.operator_running
        self.app = create_app(self.store, self.queue, self.health, self.metrics, operator=self)

        self._server: Optional[uvicorn.Server] = None
        self._threads = []
        logger.info("PostgreSQL controller initialized")

    def bootstrap(self):
        """
        One-time database setup before any reconcile pass

        Raises:
            ControllerError: setup failed; the controller must not start
        """
        ensure_auth_hook(self.db, self.config)
        self.health.bootstrapped = True

    # ============================================================================
    # OPERATOR STATE
    # ============================================================================

    @property
    def operator_running(self) -> bool:
        return self._enabled and self.scheduler is not None and self.scheduler.running

    def enable(self) -> bool:
        """
        Start watching ManagedDatabases and reconciling them

        Connects to Kubernetes on first use and applies the CRD when
        APPLY_CRD is set.

        Returns:
            True if the operator is running afterwards
        """
        with self._operator_lock:
            if self._enabled:
                return True
            if self.stop_event.is_set():
                logger.warning("Controller is shutting down, not enabling the operator")
                return False

            if self.kube is None:
                try:
                    self.kube = KubernetesClient(self.config.KUBECONFIG, self.config.KUBE_CONTEXT)
                except (ConfigException, OSError) as e:
                    logger.warning(f"Could not load Kubernetes configuration: {e}")
                    logger.info("Run `postgres-controller operator enable` once the kubeconfig exists")
                    return False

            if self.config.APPLY_CRD and not self._crd_applied:
                try:
                    self.kube.apply_crd(crd.manifest())
                except ApiException as e:
                    logger.error(f"Failed to apply CRD: {e.status} {e.reason}")
                    return False
                self._crd_applied = True

            if self.reconciler is None:
                self.vault = CredentialVault(self.kube, self.config)
                self.reconciler = Reconciler(self.kube, self.db, self.vault, self.store, self.config,
                                             stop_event=self.stop_event, metrics=self.metrics)

            self.scheduler = Scheduler(self.queue, self.reconciler.handle, self.config.WORKERS)
            self.watcher = Watcher(self.kube, self.queue, self.store, self.config.NAMESPACE,
                                   self.config.WATCH_TIMEOUT, stop_event=threading.Event())
            self.scheduler.start()
            self.watcher.start()
            self._enabled = True
            logger.info(f"{GREEN}Operator enabled ({self.config.WORKERS} workers){RESET}")
            return True

    def disable(self) -> bool:
        """
        Stop watching and let running passes finish

        Queued keys stay queued and are picked up on the next enable.
        """
        with self._operator_lock:
            if self.watcher is not None:
                self.watcher.stop()
            if self.scheduler is not None:
                self.scheduler.stop(SHUTDOWN_TIMEOUT, shut_down_queue=False)
            if self._enabled:
                logger.info("Operator disabled")
            self._enabled = False
            return True

    # ============================================================================
    # PROCESS
    # ============================================================================

    def start(self):
        self._spawn(self._probe_loop, "readiness-probe")
        self._spawn(self._serve, "management-api")
        self.enable()

    def _spawn(self, target, name: str):
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _probe_loop(self):
        """Periodically prove the server is reachable for /readyz"""
        while not self.stop_event.is_set():
            try:
                self.db.ping()
                self.health.probe_succeeded()
            except Exception as e:
                logger.warning(f"Database probe failed: {e}")
                self.health.probe_failed(str(e))
            self.stop_event.wait(self.config.PROBE_INTERVAL)

    def _serve(self):
        host, port = self.config.management_bind()
        # Signals are handled by run(); uvicorn skips its own handlers off the main thread
        server_config = uvicorn.Config(self.app, host=host, port=port, log_config=None, access_log=False)
        self._server = uvicorn.Server(server_config)
        logger.info(f"Management API listening on {host}:{port}")
        self._server.run()

    def request_stop(self, signum=None, frame=None):
        if signum is not None:
            logger.info(f"Received signal {signal.Signals(signum).name}, shutting down gracefully...")
        self.stop_event.set()

    def shutdown(self):
        """Stop intake, let running passes finish their current step, release resources"""
        self.stop_event.set()
        self.queue.shut_down()
        self.disable()
        if self._server is not None:
            self._server.should_exit = True
        for thread in self._threads:
            thread.join(5.0)
        self.db.close()
        logger.info("Controller stopped")

    def run(self) -> int:
        """
        Run until SIGTERM/SIGINT

        Returns:
            Process exit code
        """
        signal.signal(signal.SIGTERM, self.request_stop)
        signal.signal(signal.SIGINT, self.request_stop)

        try:
            self.bootstrap()
        except ControllerError as e:
            logger.critical(f"Bootstrap failed: {e}")
            self.db.close()
            return 1

        self.start()
        logger.info(f"{GREEN}Controller started{RESET}")
        try:
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()
        return 0
