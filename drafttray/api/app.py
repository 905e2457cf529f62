from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile

from drafttray.api.schemas import (
    BufferPatchRequest,
    BufferPublicResponse,
    InstanceListPublicResponse,
    OpenInstanceRequest,
    SubmitPublicResponse,
    TrayActionPublicResponse,
    TrayPublicResponse,
)
from drafttray.api.security import (
    api_key_configured,
    bearer_credential,
    install_openapi_api_key_security,
    read_auth_required,
    require_api_key_if_configured,
)
from drafttray.core.collaborators import SaveError, UploadedFile
from drafttray.core.config import config
from drafttray.core.form_host import FormHost
from drafttray.core.registry import ModalInstance
from drafttray.core.version import __version__
from drafttray.core.workspace import DraftWorkspace, UnknownEntityKindError

app = FastAPI(
    title="DraftTray API",
    description="Draft-backed, multi-instance modal manager for admin record editing",
    version=__version__,
)

WORKSPACE = DraftWorkspace.from_config(config)
WORKSPACE.register_http_bindings(config)

install_openapi_api_key_security(app)


def _public_instance(instance: ModalInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "entity_kind": instance.entity_kind,
        "mode": instance.mode.value,
        "minimized": instance.minimized,
        "entity_id": instance.entity_id,
    }


def _public_buffer(host: FormHost) -> Dict[str, Any]:
    return {
        "instance_id": host.instance_id,
        "seed_source": host.seed_source,
        "dirty": host.dirty,
        "submitting": host.submitting,
        "data": host.buffer,
    }


def _mounted_host(instance_id: str) -> FormHost:
    try:
        host = WORKSPACE.mount(instance_id)
    except UnknownEntityKindError as exc:
        raise HTTPException(status_code=409, detail=f"No binding for entity kind {exc.args[0]!r}") from exc
    if host is None:
        raise HTTPException(status_code=404, detail="Modal instance not found")
    return host


@app.get("/health")
def health_check():
    storage = config.storage
    diagnostics: Dict[str, Any] = {
        "store": {"mode": storage.mode if storage.mode in {"sqlite", "json"} else "inmem"},
        "key_namespace": WORKSPACE.namespace,
        "entity_kinds": sorted(WORKSPACE.bindings),
        "auth": {
            "api_key_configured": bool(api_key_configured()),
            "read_auth_required": bool(read_auth_required()),
        },
    }
    if storage.mode == "sqlite":
        diagnostics["store"]["path"] = storage.sqlite_path
    elif storage.mode == "json":
        diagnostics["store"]["path"] = storage.json_path
    return {"status": "healthy", "version": __version__, "diagnostics": diagnostics}


@app.get("/instances", response_model=InstanceListPublicResponse)
def list_instances(request: Request, entity_kind: Optional[str] = None):
    require_api_key_if_configured(request, for_read=True)
    instances = WORKSPACE.registry.list(entity_kind)
    return {"instance_count": len(instances), "instances": [_public_instance(i) for i in instances]}


@app.post("/instances")
async def open_instance(req: OpenInstanceRequest, request: Request):
    require_api_key_if_configured(request)
    entity_kind = req.entity_kind.strip()
    try:
        if req.mode == "edit":
            entity_id = (req.entity_id or "").strip()
            if not entity_id:
                raise HTTPException(status_code=400, detail="Missing entity_id for edit mode")
            instance_id = await WORKSPACE.open_edit(
                entity_kind, entity_id, snapshot=req.snapshot, credential=bearer_credential(request)
            )
        else:
            instance_id = WORKSPACE.open_create(entity_kind)
    except UnknownEntityKindError as exc:
        raise HTTPException(status_code=400, detail=f"Unsupported entity kind: {entity_kind}") from exc
    except SaveError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    instance = WORKSPACE.registry.get(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="Modal instance not found")
    return {"status": "opened", "instance": _public_instance(instance)}


@app.post("/instances/{instance_id}/minimize")
def minimize_instance(instance_id: str, request: Request):
    require_api_key_if_configured(request)
    changed = WORKSPACE.minimize(instance_id)
    return {"status": "minimized" if changed else "unchanged", "instance_id": instance_id}


@app.post("/instances/{instance_id}/restore")
def restore_instance(instance_id: str, request: Request):
    require_api_key_if_configured(request)
    changed = WORKSPACE.registry.restore(instance_id)
    return {"status": "restored" if changed else "unchanged", "instance_id": instance_id}


@app.post("/instances/{instance_id}/close")
def close_instance(instance_id: str, request: Request):
    require_api_key_if_configured(request)
    changed = WORKSPACE.close(instance_id)
    return {"status": "closed" if changed else "unchanged", "instance_id": instance_id}


@app.get("/instances/{instance_id}/buffer", response_model=BufferPublicResponse)
def get_buffer(instance_id: str, request: Request):
    require_api_key_if_configured(request, for_read=True)
    instance = WORKSPACE.registry.get(instance_id)
    if instance is not None and instance.minimized:
        raise HTTPException(status_code=409, detail="Modal instance is minimized")
    return _public_buffer(_mounted_host(instance_id))


@app.patch("/instances/{instance_id}/buffer", response_model=BufferPublicResponse)
def patch_buffer(instance_id: str, req: BufferPatchRequest, request: Request):
    require_api_key_if_configured(request)
    host = _mounted_host(instance_id)
    if req.replace:
        host.replace(req.patch)
    else:
        host.update(req.patch)
    return _public_buffer(host)


@app.post("/instances/{instance_id}/submit", response_model=SubmitPublicResponse, response_model_exclude_none=True)
async def submit_instance(instance_id: str, request: Request, file: Optional[UploadFile] = File(None)):
    require_api_key_if_configured(request)
    host = _mounted_host(instance_id)

    upload: Optional[UploadedFile] = None
    if file is not None and (file.filename or "").strip():
        content = await file.read()
        upload = UploadedFile(
            filename=file.filename.strip(),
            content=content,
            content_type=(file.content_type or "application/octet-stream").strip(),
        )

    result = await host.submit(upload, credential=bearer_credential(request))
    if result.status == "busy":
        raise HTTPException(status_code=409, detail=result.error)
    if result.status == "failed":
        raise HTTPException(status_code=502, detail=result.error)
    return {"status": "saved", "instance_id": instance_id, "entity": result.entity}


@app.post("/instances/{instance_id}/cancel")
def cancel_instance(instance_id: str, request: Request):
    require_api_key_if_configured(request)
    host = _mounted_host(instance_id)
    host.cancel()
    draft_kept = WORKSPACE.draft_store.load(instance_id) is not None
    return {"status": "cancelled", "instance_id": instance_id, "draft_kept": draft_kept}


@app.get("/tray", response_model=TrayPublicResponse)
def get_tray(request: Request, entity_kind: Optional[str] = None):
    require_api_key_if_configured(request, for_read=True)
    view = WORKSPACE.tray(entity_kind).view()
    return {
        "minimized_count": len(view.minimized),
        "orphan_count": len(view.orphaned_drafts),
        "entries": [entry.__dict__ for entry in view.entries],
    }


@app.post("/tray/restore-all", response_model=TrayActionPublicResponse)
def tray_restore_all(request: Request, entity_kind: Optional[str] = None):
    require_api_key_if_configured(request)
    return {"status": "restored", "affected": WORKSPACE.tray(entity_kind).restore_all()}


@app.post("/tray/clear-unsaved", response_model=TrayActionPublicResponse)
def tray_clear_unsaved(request: Request, entity_kind: Optional[str] = None):
    require_api_key_if_configured(request)
    WORKSPACE.flush_all()
    affected = WORKSPACE.tray(entity_kind).clear_unsaved()
    for modal_id in affected:
        WORKSPACE.unmount(modal_id)
    return {"status": "cleared", "affected": affected}


@app.post("/tray/clear-all", response_model=TrayActionPublicResponse)
def tray_clear_all(request: Request, entity_kind: Optional[str] = None):
    require_api_key_if_configured(request)
    WORKSPACE.flush_all()
    affected = WORKSPACE.tray(entity_kind).clear_all()
    for modal_id in affected:
        WORKSPACE.unmount(modal_id)
    return {"status": "cleared", "affected": affected}


@app.post("/tray/drafts/{modal_id}/open")
def tray_open_draft(modal_id: str, request: Request):
    require_api_key_if_configured(request)
    instance_id = WORKSPACE.tray().open_orphan_by_id(modal_id)
    if instance_id is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    instance = WORKSPACE.registry.get(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="Modal instance not found")
    return {"status": "opened", "instance": _public_instance(instance)}


@app.delete("/tray/drafts/{modal_id}")
def tray_discard_draft(modal_id: str, request: Request):
    require_api_key_if_configured(request)
    WORKSPACE.unmount(modal_id)
    if not WORKSPACE.tray().discard_draft(modal_id):
        raise HTTPException(status_code=404, detail="Draft not found")
    return {"status": "discarded", "modal_id": modal_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.api_host, port=config.api_port, reload=config.debug)
