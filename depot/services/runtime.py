"""
Process-wide wiring of the persistence stack.

The storage mode is decided once, from ``SHARED_BACKEND_ENABLED`` at startup,
and never changes for the life of the runtime.

Usage:
    runtime = init_runtime(app)          # inside create_app
    runtime = get_runtime()              # inside a request
    runtime.workflow.fire("washing_orders", "WSH-001", "approve")
"""

import logging
from dataclasses import dataclass

from flask import current_app

from depot.services.audit_trail import AuditTrail
from depot.services.broadcast import ChangeBroadcaster
from depot.services.chat_service import ChatService
from depot.services.entity_store import EntityStore
from depot.services.remote_mirror import RemoteMirror, build_mirror
from depot.services.settings_service import SettingsService
from depot.services.sync_reconciler import SyncReconciler
from depot.services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "depot"


@dataclass(frozen=True)
class DepotRuntime:
    shared: bool
    store: EntityStore
    mirror: RemoteMirror | None
    broadcaster: ChangeBroadcaster
    reconciler: SyncReconciler
    audit: AuditTrail
    settings: SettingsService
    workflow: WorkflowService
    chat: ChatService

    @property
    def mode(self) -> str:
        return "shared" if self.shared else "local"

    def close(self) -> None:
        self.reconciler.stop()
        if self.mirror is not None:
            self.mirror.close()


def build_runtime(*, shared: bool, redis_url: str | None = None, mirror: RemoteMirror | None = None,
                  broadcaster: ChangeBroadcaster | None = None, client_id: str | None = None) -> DepotRuntime:
    """Assemble the stack.  Needs an application context (loads state on start)."""
    store = EntityStore()
    if shared and mirror is None:
        mirror = build_mirror(redis_url)
    if not shared:
        mirror = None
    broadcaster = broadcaster or ChangeBroadcaster()
    reconciler = SyncReconciler(store, mirror=mirror, broadcaster=broadcaster, client_id=client_id)
    reconciler.start()

    audit = AuditTrail()
    settings = SettingsService()
    return DepotRuntime(
        shared=shared,
        store=store,
        mirror=mirror,
        broadcaster=broadcaster,
        reconciler=reconciler,
        audit=audit,
        settings=settings,
        workflow=WorkflowService(reconciler, audit, settings),
        chat=ChatService(reconciler, audit),
    )


def init_runtime(app) -> DepotRuntime:
    """Build the runtime for *app* and register the per-request change poll."""
    previous = app.extensions.get(EXTENSION_KEY)
    if previous is not None:
        previous.close()

    shared = bool(app.config.get("SHARED_BACKEND_ENABLED", False))
    with app.app_context():
        runtime = build_runtime(shared=shared, redis_url=app.config.get("REDIS_URL"))
    app.extensions[EXTENSION_KEY] = runtime
    logger.info("Depot runtime ready (mode=%s)", runtime.mode)

    if not app.config.get("_DEPOT_POLL_REGISTERED"):
        @app.before_request
        def _poll_local_changes():
            rt = app.extensions.get(EXTENSION_KEY)
            if rt is not None and not rt.shared:
                rt.reconciler.poll_changes()

        app.config["_DEPOT_POLL_REGISTERED"] = True
    return runtime


def get_runtime() -> DepotRuntime:
    return current_app.extensions[EXTENSION_KEY]
