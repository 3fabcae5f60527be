"""Tests for the Access connection map layout and contact helpers."""

from __future__ import annotations

import math
from datetime import date, timedelta

from src.app.access.connection_map import (
    MAX_SPIRAL_CONTACTS,
    build_connection_map,
    resolve_overlaps,
    scale_factor,
    type_color,
)
from src.app.access.filters import contact_stats, filter_contacts, last_interaction_info
from src.app.access.schemas import ContactRead, InteractionRead, MapNode, ViewMode


def _contact(cid: str, name: str = "Contact", company: str | None = None, tags=None, ctype="investor"):
    return ContactRead(
        id=cid,
        user_id="u1",
        name=name,
        company=company,
        tags=tags or [],
        contact_type=ctype,
    )


def _interaction(iid: str, contact_id: str, days_ago: int = 0, deal_id: str | None = None, notes=None):
    return InteractionRead(
        id=iid,
        user_id="u1",
        contact_id=contact_id,
        deal_id=deal_id,
        interaction_date=date(2026, 3, 31) - timedelta(days=days_ago),
        notes=notes,
    )


# ── Layout ───────────────────────────────────────────────────────────────────


def test_scale_factor_steps():
    assert scale_factor(8) == 1.0
    assert scale_factor(12) == 0.85
    assert scale_factor(16) == 0.7
    assert scale_factor(40) == 0.6


def test_type_color_falls_back_to_grey():
    assert type_color("investor") == "#3b82f6"
    assert type_color("unknown") == "#6b7280"
    assert type_color(None) == "#6b7280"


def test_all_mode_links_company_and_tags():
    contacts = [
        _contact("a", "Ann", company="Acme"),
        _contact("b", "Ben", company=" acme "),
        _contact("c", "Cat", tags=["fintech"]),
        _contact("d", "Dan", tags=["fintech", "ai"]),
        _contact("e", "Eve"),
    ]
    result = build_connection_map(contacts, view_mode="all")

    assert result.view_mode == ViewMode.ALL
    assert len(result.nodes) == 5
    strengths = {(e.source, e.target): e.strength for e in result.edges}
    assert strengths == {("a", "b"): 2, ("c", "d"): 1}
    labels = {n.id: n.label for n in result.nodes}
    assert labels["a"] == "Ann"


def test_all_mode_caps_contacts():
    contacts = [_contact(str(i), f"Person {i}") for i in range(MAX_SPIRAL_CONTACTS + 5)]
    result = build_connection_map(contacts)
    assert len(result.nodes) == MAX_SPIRAL_CONTACTS


def test_all_mode_sizes_nodes_by_shared_company_and_tags():
    contacts = [
        _contact("a", "Ann", company="Acme", tags=["ai", "fintech"]),
        _contact("b", "Ben", tags=["ai", "fintech"]),
        _contact("c", "Cat"),
    ]
    # Drawn contacts are capped, but sizing counts against everyone.
    contacts += [_contact(f"x{i}", "Filler") for i in range(MAX_SPIRAL_CONTACTS)]
    contacts.append(_contact("z", "Zed", company="acme"))
    result = build_connection_map(contacts, view_mode=ViewMode.ALL)

    scale = scale_factor(MAX_SPIRAL_CONTACTS)
    sizes = {n.id: n.size for n in result.nodes}
    assert "z" not in sizes
    # one colleague plus Ben counted once per shared tag
    assert sizes["a"] == (12 + 3 * 1.5) * scale
    assert sizes["b"] == (12 + 2 * 1.5) * scale
    assert sizes["c"] == 12 * scale


def test_company_mode_keeps_first_seen_companies():
    contacts = [_contact(f"c{i}", company=f"Co{i}") for i in range(8)]
    contacts += [_contact(f"big{i}", company="Bigco") for i in range(3)]
    result = build_connection_map(contacts, view_mode=ViewMode.COMPANY)

    hubs = [n.id for n in result.nodes if n.kind == "group"]
    assert hubs == [f"company-Co{i}" for i in range(8)]


def test_tag_mode_keeps_first_six_tags():
    contacts = [_contact(f"c{i}", tags=[f"t{i}"]) for i in range(6)]
    contacts += [_contact(f"late{i}", tags=["popular"]) for i in range(4)]
    result = build_connection_map(contacts, view_mode=ViewMode.TAG)

    hubs = [n.id for n in result.nodes if n.kind == "group"]
    assert hubs == [f"tag-t{i}" for i in range(6)]


def test_company_mode_groups_members_under_hubs():
    contacts = [
        _contact("a", company="Acme"),
        _contact("b", company="Acme"),
        _contact("c", company="Beta"),
        _contact("d"),
    ]
    result = build_connection_map(contacts, view_mode=ViewMode.COMPANY)

    hubs = [n for n in result.nodes if n.kind == "group"]
    assert [h.id for h in hubs] == ["company-Acme", "company-Beta"]
    assert all(e.strength == 2 for e in result.edges)
    assert {e.target for e in result.edges} == {"a", "b", "c"}


def test_tag_mode_limits_members_per_hub():
    contacts = [_contact(str(i), tags=["ai"]) for i in range(6)]
    result = build_connection_map(contacts, view_mode=ViewMode.TAG)
    members = [e for e in result.edges if e.source == "tag-ai"]
    assert len(members) == 4


def test_project_mode_deduplicates_contact_per_deal():
    contacts = [_contact("a")]
    interactions = [
        _interaction("i1", "a", deal_id="d1"),
        _interaction("i2", "a", deal_id="d1"),
    ]
    result = build_connection_map(contacts, interactions, {"d1": "Nebula"}, ViewMode.PROJECT)
    assert len(result.edges) == 1
    hub = next(n for n in result.nodes if n.kind == "group")
    assert hub.label == "Nebu"


def test_resolve_overlaps_pushes_nodes_apart():
    nodes = [
        MapNode(id="a", label="a", x=200, y=88, size=10, color="#000"),
        MapNode(id="b", label="b", x=202, y=88, size=10, color="#000"),
    ]
    result = resolve_overlaps(nodes)
    distance = math.hypot(result[1].x - result[0].x, result[1].y - result[0].y)
    assert distance >= (10 + 10) * 0.8 + 8 - 0.01
    # Inputs are left untouched.
    assert nodes[0].x == 200


def _node(nid: str, x: float, y: float = 88, size: float = 10) -> MapNode:
    return MapNode(id=nid, label=nid, x=x, y=y, size=size, color="#000")


def _min_gap(nodes: list[MapNode]) -> float:
    return min(
        math.hypot(b.x - a.x, b.y - a.y)
        for i, a in enumerate(nodes)
        for b in nodes[i + 1:]
    )


def test_resolve_overlaps_respects_iteration_cap():
    row = [_node("a", 100), _node("b", 105), _node("c", 110)]
    # A single pass leaves a and c overlapping again.
    assert _min_gap(resolve_overlaps(row, max_iterations=1)) < 24 - 0.01
    assert _min_gap(resolve_overlaps(row)) >= 24 - 0.01


def test_resolve_overlaps_stops_once_nothing_moves(monkeypatch):
    calls = []
    hypot = math.hypot

    def counting_hypot(*args):
        calls.append(args)
        return hypot(*args)

    monkeypatch.setattr(math, "hypot", counting_hypot)
    nodes = [_node("a", 60), _node("b", 300)]
    result = resolve_overlaps(nodes)

    assert len(calls) == 1
    assert [(n.x, n.y) for n in result] == [(60, 88), (300, 88)]


def test_resolve_overlaps_clamps_to_drawable_area():
    corner = [_node("a", 26, 21), _node("b", 28, 22), _node("c", 374, 155), _node("d", 372, 154)]
    for node in resolve_overlaps(corner):
        assert 25 <= node.x <= 375
        assert 20 <= node.y <= 156


def test_resolve_overlaps_leaves_coincident_nodes():
    result = resolve_overlaps([_node("a", 150), _node("b", 150)])
    assert [(n.x, n.y) for n in result] == [(150, 88), (150, 88)]


# ── Filters ──────────────────────────────────────────────────────────────────


def test_filter_contacts_query_is_case_insensitive():
    contacts = [_contact("a", "Ann", company="Acme"), _contact("b", "Ben", tags=["Climate"])]
    assert [c.id for c in filter_contacts(contacts, query="climate")] == ["b"]
    assert [c.id for c in filter_contacts(contacts, query="ACME")] == ["a"]


def test_last_interaction_info_uses_newest_date():
    interactions = [_interaction("1", "a", days_ago=40), _interaction("2", "a", days_ago=3)]
    info = last_interaction_info(interactions, today=date(2026, 3, 31))
    assert info.days_ago == 3
    assert info.is_stale is False
    assert last_interaction_info([], today=date(2026, 3, 31)) is None


def test_contact_stats_counts_stale_contacts():
    contacts = [_contact("a"), _contact("b", ctype="expert")]
    interactions = [_interaction("1", "a", days_ago=31), _interaction("2", "b", days_ago=2)]
    stats = contact_stats(contacts, interactions, today=date(2026, 3, 31))
    assert stats.total == 2
    assert stats.stale == 1
    assert stats.by_type == {"investor": 1, "fa": 0, "portco": 0, "expert": 1}
    assert stats.interactions_last_7_days == 1
