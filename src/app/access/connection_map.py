"""Connection map layout for the Access view.

Lays contacts out on a fixed 400x176 canvas either as a single spiral
(``all``) or as hubs grouped by company, tag, or linked project, then
runs resolve_overlaps over the result so circles do not sit on top of
each other. Output is plain coordinates; rendering is the client's job.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from src.app.access.schemas import (
    ConnectionMap,
    ContactRead,
    InteractionRead,
    MapEdge,
    MapNode,
    ViewMode,
)

CENTER_X = 200.0
CENTER_Y = 88.0
GOLDEN_ANGLE = math.pi * (3 - math.sqrt(5))

MAX_SPIRAL_CONTACTS = 20
MAX_MEMBERS_PER_GROUP = 4

TYPE_COLORS = {
    "investor": "#3b82f6",
    "fa": "#a855f7",
    "portco": "#10b981",
    "expert": "#f59e0b",
}
DEFAULT_COLOR = "#6b7280"
COMPANY_COLOR = "#94a3b8"
TAG_COLOR = "#a855f7"
PROJECT_COLOR = "#10b981"


def scale_factor(count: int) -> float:
    """Shrink circles as the number of laid-out items grows."""
    if count <= 8:
        return 1.0
    if count <= 12:
        return 0.85
    if count <= 16:
        return 0.7
    return 0.6


def type_color(contact_type: str | None) -> str:
    return TYPE_COLORS.get(contact_type or "", DEFAULT_COLOR)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _first_name(name: str, length: int) -> str:
    return (name.split(" ")[0] if name else "")[:length]


def resolve_overlaps(nodes: list[MapNode], min_distance: float = 8, max_iterations: int = 50) -> list[MapNode]:
    """Push overlapping circles apart.

    For every pair closer than (size_i + size_j) * 0.8 + min_distance, both
    nodes move half the overlap along the line between them. Coordinates are
    clamped to the drawable area after each push. Stops early once a full
    pass moves nothing.
    """
    result = [node.model_copy() for node in nodes]

    for _ in range(max_iterations):
        moved = False
        for i in range(len(result)):
            for j in range(i + 1, len(result)):
                a, b = result[i], result[j]
                dx = b.x - a.x
                dy = b.y - a.y
                dist = math.hypot(dx, dy)
                min_dist = (a.size + b.size) * 0.8 + min_distance
                if 0 < dist < min_dist:
                    moved = True
                    overlap = (min_dist - dist) / 2
                    angle = math.atan2(dy, dx)
                    a.x = _clamp(a.x - math.cos(angle) * overlap, 25, 375)
                    a.y = _clamp(a.y - math.sin(angle) * overlap, 20, 156)
                    b.x = _clamp(b.x + math.cos(angle) * overlap, 25, 375)
                    b.y = _clamp(b.y + math.sin(angle) * overlap, 20, 156)
        if not moved:
            break

    return result


# ── Layouts ─────────────────────────────────────────────────────────────────


def _same_company(a: ContactRead, b: ContactRead) -> bool:
    return bool(a.company and b.company and a.company.strip().lower() == b.company.strip().lower())


def _share_tag(a: ContactRead, b: ContactRead) -> bool:
    return bool(set(a.tags) & set(b.tags))


def _connection_counts(contacts: list[ContactRead]) -> dict[str, int]:
    """Per contact: others at the same company plus, per own tag, others carrying it.

    Counted against every contact, not only the ones drawn, so someone
    sharing two tags with a contact counts twice.
    """
    counts: dict[str, int] = {}
    for contact in contacts:
        others = [other for other in contacts if other.id != contact.id]
        count = sum(1 for other in others if _same_company(contact, other))
        for tag in contact.tags:
            count += sum(1 for other in others if tag in other.tags)
        counts[contact.id] = count
    return counts


def _layout_all(contacts: list[ContactRead]) -> tuple[list[MapNode], list[MapEdge]]:
    shown = contacts[:MAX_SPIRAL_CONTACTS]
    scale = scale_factor(len(shown))

    edges: dict[tuple[str, str], MapEdge] = {}
    for idx, contact in enumerate(shown):
        for other in shown[idx + 1:]:
            if _same_company(contact, other):
                strength = 2
            elif _share_tag(contact, other):
                strength = 1
            else:
                continue
            key = tuple(sorted((contact.id, other.id)))
            edges.setdefault(key, MapEdge(source=contact.id, target=other.id, strength=strength))

    connections = _connection_counts(contacts)

    nodes = []
    for idx, contact in enumerate(shown):
        angle = idx * GOLDEN_ANGLE
        radius = (30 + math.sqrt(idx) * 22) * scale
        x = CENTER_X + math.cos(angle) * radius
        y = CENTER_Y + math.sin(angle) * radius * 0.6
        nodes.append(
            MapNode(
                id=contact.id,
                label=_first_name(contact.name, 3),
                x=_clamp(x, 30, 370),
                y=_clamp(y, 25, 150),
                size=(12 + min(connections.get(contact.id, 0) * 1.5, 8)) * scale,
                color=type_color(contact.contact_type),
                kind="contact",
                contact_type=contact.contact_type,
            )
        )
    return nodes, list(edges.values())


def _layout_groups(
    groups: list[tuple[str, str, list[ContactRead]]],
    *,
    radius: float,
    base_size: float,
    size_cap: float,
    color: str,
) -> tuple[list[MapNode], list[MapEdge]]:
    """Place group hubs on an ellipse and fan up to four members around each."""
    scale = scale_factor(len(groups) * 3)
    angle_step = 2 * math.pi / max(len(groups), 1)

    nodes: dict[str, MapNode] = {}
    edges: dict[str, MapEdge] = {}
    for idx, (group_id, label, members) in enumerate(groups):
        angle = idx * angle_step - math.pi / 2
        hub_x = CENTER_X + math.cos(angle) * radius * scale
        hub_y = CENTER_Y + math.sin(angle) * radius * scale * 0.7
        nodes[group_id] = MapNode(
            id=group_id,
            label=label[:4],
            x=hub_x,
            y=hub_y,
            size=(base_size + min(len(members) * 2, size_cap)) * scale,
            color=color,
            kind="group",
        )

        for k, contact in enumerate(members[:MAX_MEMBERS_PER_GROUP]):
            member_angle = angle + (k - 1.5) * 0.4
            member_radius = 28 * scale
            if contact.id not in nodes:
                nodes[contact.id] = MapNode(
                    id=contact.id,
                    label=_first_name(contact.name, 2),
                    x=_clamp(hub_x + math.cos(member_angle) * member_radius, 20, 380),
                    y=_clamp(hub_y + math.sin(member_angle) * member_radius * 0.7, 15, 160),
                    size=9 * scale,
                    color=type_color(contact.contact_type),
                    kind="contact",
                    contact_type=contact.contact_type,
                )
            edges[f"{group_id}-{contact.id}"] = MapEdge(source=group_id, target=contact.id, strength=1)

    return list(nodes.values()), list(edges.values())


def _top(groups: dict[str, tuple[str, list[ContactRead]]], limit: int) -> list[tuple[str, str, list[ContactRead]]]:
    # First-seen order: the first ``limit`` groups win regardless of size.
    kept = [(gid, label, members) for gid, (label, members) in groups.items() if members]
    return kept[:limit]


def _company_groups(contacts: list[ContactRead]) -> list[tuple[str, str, list[ContactRead]]]:
    groups: dict[str, tuple[str, list[ContactRead]]] = {}
    for contact in contacts:
        if contact.company and contact.company.strip():
            key = f"company-{contact.company.strip()}"
            groups.setdefault(key, (contact.company.strip(), []))[1].append(contact)
    return _top(groups, 8)


def _tag_groups(contacts: list[ContactRead]) -> list[tuple[str, str, list[ContactRead]]]:
    groups: dict[str, tuple[str, list[ContactRead]]] = {}
    for contact in contacts:
        for tag in contact.tags:
            groups.setdefault(f"tag-{tag}", (tag, []))[1].append(contact)
    return _top(groups, 6)


def _project_groups(
    contacts: list[ContactRead],
    interactions: Iterable[InteractionRead],
    deal_names: dict[str, str],
) -> list[tuple[str, str, list[ContactRead]]]:
    by_id = {c.id: c for c in contacts}
    groups: dict[str, tuple[str, list[ContactRead]]] = {}
    seen: set[tuple[str, str]] = set()
    for interaction in interactions:
        if not interaction.deal_id or interaction.contact_id not in by_id:
            continue
        if (interaction.deal_id, interaction.contact_id) in seen:
            continue
        seen.add((interaction.deal_id, interaction.contact_id))
        name = deal_names.get(interaction.deal_id)
        if name is None and interaction.deal is not None:
            name = interaction.deal.project_name
        entry = groups.setdefault(f"project-{interaction.deal_id}", (name or "Unknown", []))
        entry[1].append(by_id[interaction.contact_id])
    return _top(groups, 6)


def build_connection_map(
    contacts: list[ContactRead],
    interactions: list[InteractionRead] | None = None,
    deal_names: dict[str, str] | None = None,
    view_mode: ViewMode | str = ViewMode.ALL,
) -> ConnectionMap:
    """Lay out the connection map for one view mode.

    Args:
        contacts: Contacts in display order (newest first).
        interactions: All interactions, used by the project view.
        deal_names: deal_id -> project_name, used to label project hubs.
        view_mode: all | company | tag | project.
    """
    mode = ViewMode(view_mode)
    interactions = interactions or []
    deal_names = deal_names or {}

    if mode == ViewMode.ALL:
        nodes, edges = _layout_all(contacts)
    elif mode == ViewMode.COMPANY:
        nodes, edges = _layout_groups(
            _company_groups(contacts), radius=55, base_size=16, size_cap=10, color=COMPANY_COLOR
        )
        for edge in edges:
            edge.strength = 2
    elif mode == ViewMode.TAG:
        nodes, edges = _layout_groups(
            _tag_groups(contacts), radius=50, base_size=14, size_cap=8, color=TAG_COLOR
        )
    else:
        nodes, edges = _layout_groups(
            _project_groups(contacts, interactions, deal_names),
            radius=50,
            base_size=14,
            size_cap=8,
            color=PROJECT_COLOR,
        )

    return ConnectionMap(view_mode=mode, nodes=resolve_overlaps(nodes), edges=edges)
