"""REST API endpoints for the Access module (contacts and interactions).

Contacts are listed newest first and filtered server-side by type and a
free-text query that also searches interaction notes. Stats and the
connection map are derived from the same fetched rows.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.app.access.connection_map import build_connection_map
from src.app.access.filters import (
    contact_stats,
    filter_contacts,
    group_interactions,
    last_interaction_info,
)
from src.app.access.schemas import (
    ConnectionMap,
    ContactCreate,
    ContactRead,
    ContactStats,
    ContactUpdate,
    InteractionCreate,
    InteractionRead,
    InteractionUpdate,
    LastInteraction,
    ViewMode,
)
from src.app.api.deps import get_current_user
from src.app.models.user import User

router = APIRouter(prefix="/access", tags=["access"])


def _get_access_repository(request: Request) -> Any:
    """Retrieve AccessRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "access_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access module not initialized",
        )
    return repo


def _not_found(what: str, item_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found: {item_id}")


# ── Contacts ─────────────────────────────────────────────────────────────────


@router.get("/contacts", response_model=list[ContactRead])
async def list_contacts(
    request: Request,
    contact_type: str | None = Query(None, alias="type"),
    q: str | None = None,
    user: User = Depends(get_current_user),
) -> list[ContactRead]:
    """List contacts, optionally filtered by type and query."""
    repo = _get_access_repository(request)
    uid = str(user.id)
    contacts = await repo.list_contacts(uid)
    grouped = group_interactions(await repo.list_interactions(uid)) if q else {}
    return filter_contacts(contacts, grouped, contact_type, q)


@router.post("/contacts", response_model=ContactRead, status_code=201)
async def create_contact(
    body: ContactCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> ContactRead:
    repo = _get_access_repository(request)
    return await repo.create_contact(str(user.id), body)


@router.get("/contacts/{contact_id}", response_model=ContactRead)
async def get_contact(
    contact_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> ContactRead:
    repo = _get_access_repository(request)
    contact = await repo.get_contact(str(user.id), contact_id)
    if contact is None:
        raise _not_found("Contact", contact_id)
    return contact


@router.patch("/contacts/{contact_id}", response_model=ContactRead)
async def update_contact(
    contact_id: str,
    body: ContactUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> ContactRead:
    repo = _get_access_repository(request)
    try:
        return await repo.update_contact(str(user.id), contact_id, body)
    except ValueError:
        raise _not_found("Contact", contact_id)


@router.delete("/contacts/{contact_id}", status_code=204)
async def delete_contact(
    contact_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    """Delete a contact together with its interactions."""
    repo = _get_access_repository(request)
    if not await repo.delete_contact(str(user.id), contact_id):
        raise _not_found("Contact", contact_id)


@router.get("/contacts/{contact_id}/interactions", response_model=list[InteractionRead])
async def list_contact_interactions(
    contact_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> list[InteractionRead]:
    """Interactions for one contact, newest first, each with its linked deal."""
    repo = _get_access_repository(request)
    return await repo.list_interactions(str(user.id), contact_id=contact_id)


@router.get("/contacts/{contact_id}/last-interaction", response_model=LastInteraction | None)
async def get_last_interaction(
    contact_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> LastInteraction | None:
    repo = _get_access_repository(request)
    return last_interaction_info(await repo.list_interactions(str(user.id), contact_id=contact_id))


# ── Interactions ─────────────────────────────────────────────────────────────


@router.post("/interactions", response_model=InteractionRead, status_code=201)
async def create_interaction(
    body: InteractionCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> InteractionRead:
    repo = _get_access_repository(request)
    try:
        return await repo.create_interaction(str(user.id), body)
    except ValueError:
        raise _not_found("Contact", body.contact_id)


@router.patch("/interactions/{interaction_id}", response_model=InteractionRead)
async def update_interaction(
    interaction_id: str,
    body: InteractionUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> InteractionRead:
    repo = _get_access_repository(request)
    try:
        return await repo.update_interaction(str(user.id), interaction_id, body)
    except ValueError:
        raise _not_found("Interaction", interaction_id)


@router.delete("/interactions/{interaction_id}", status_code=204)
async def delete_interaction(
    interaction_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_access_repository(request)
    if not await repo.delete_interaction(str(user.id), interaction_id):
        raise _not_found("Interaction", interaction_id)


# ── Derived views ────────────────────────────────────────────────────────────


@router.get("/stats", response_model=ContactStats)
async def get_stats(
    request: Request,
    user: User = Depends(get_current_user),
) -> ContactStats:
    repo = _get_access_repository(request)
    uid = str(user.id)
    return contact_stats(await repo.list_contacts(uid), await repo.list_interactions(uid))


@router.get("/connection-map", response_model=ConnectionMap)
async def get_connection_map(
    request: Request,
    view_mode: ViewMode = ViewMode.ALL,
    user: User = Depends(get_current_user),
) -> ConnectionMap:
    """Lay out the contact network for the requested view mode."""
    repo = _get_access_repository(request)
    uid = str(user.id)
    contacts = await repo.list_contacts(uid)

    interactions: list[InteractionRead] = []
    deal_names: dict[str, str] = {}
    if view_mode == ViewMode.PROJECT:
        interactions = await repo.list_interactions(uid)
        deal_repo = getattr(request.app.state, "deal_repository", None)
        if deal_repo is not None:
            deal_names = await deal_repo.deal_names(uid)
        else:
            deal_names = {
                i.deal.id: i.deal.project_name for i in interactions if i.deal is not None
            }
    return build_connection_map(contacts, interactions, deal_names, view_mode)
