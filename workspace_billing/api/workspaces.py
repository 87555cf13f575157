"""
Workspace API routes.

- POST /api/workspaces: Register a workspace owned by the caller
- GET  /api/workspaces: The caller's workspaces with their tiers
- GET  /api/workspaces/{id}/access: Lock state for a workspace
"""
from fastapi import APIRouter, Depends

from workspace_billing.api.deps import get_caller_id, get_gate, get_lifecycle
from workspace_billing.api.schemas import RegisterWorkspaceRequest
from workspace_billing.features.access.gate import WorkspaceAccessGate
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.store import WorkspaceRecord

router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])


def _workspace_to_dict(ws: WorkspaceRecord):
    return {"id": ws.id, "owner_id": ws.owner_id, "name": ws.name, "subscription_tier": ws.subscription_tier.value}


@router.post("")
def register_workspace(
    body: RegisterWorkspaceRequest,
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    """
    Idempotent for the owner; re-registering renames the workspace.

    Errors:
        409: The id is already registered to another user
    """
    return _workspace_to_dict(lifecycle.register_workspace(user_id, body.id, body.name))


@router.get("")
def list_workspaces(
    user_id: str = Depends(get_caller_id),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return {"workspaces": [_workspace_to_dict(ws) for ws in lifecycle.store.list_workspaces(user_id)]}


@router.get("/{workspace_id}/access")
def workspace_access(workspace_id: str, gate: WorkspaceAccessGate = Depends(get_gate)):
    """Lock state for a workspace, derived from its owner's subscription."""
    status = gate.status_for(workspace_id)
    return {
        "workspace_id": workspace_id,
        "is_locked": status.is_locked,
        "reason": status.reason.value if status.reason else None,
        "owner_id": status.owner_id,
    }
