"""
Tests for scripts/audit_clusters.py

Tests cluster grouping and invariant checks over stored contacts.
"""
import json
import pytest

from api.services.contact_store import LinkPrecedence
from scripts.audit_clusters import (
    audit_cluster,
    audit_contacts,
    group_clusters,
    main,
)

pytestmark = pytest.mark.unit


class TestGroupClusters:
    """Tests for partitioning contacts into clusters."""

    def test_shared_fields_and_links_connect(self, store, seed):
        a = seed("a@x.com", "111")
        b = seed("b@x.com", "111", minutes=1)       # shares phone with a
        c = seed("c@x.com", "333", linked_id=b.id, minutes=2)  # linked to b
        d = seed("d@x.com", "444", minutes=3)       # alone

        clusters = group_clusters(store.list_all())

        ids = sorted(sorted(m.id for m in members) for members in clusters)
        assert ids == sorted([sorted([a.id, b.id, c.id]), [d.id]])

    def test_members_ordered_oldest_first(self, store, seed):
        late = seed("a@x.com", "111", minutes=9)
        early = seed("a@x.com", "222", minutes=0)

        [members] = group_clusters(store.list_all())

        assert [c.id for c in members] == [early.id, late.id]


class TestAuditCluster:
    """Tests for per-cluster invariant checks."""

    def test_consistent_cluster(self, store, seed):
        p = seed("a@x.com", "111")
        seed("a@x.com", "222", linked_id=p.id, minutes=1)

        assert audit_contacts(store.list_all()) == []

    def test_multiple_primaries(self, store, seed):
        seed("a@x.com", "111")
        seed("a@x.com", "222", minutes=1)

        kinds = [v.kind for v in audit_contacts(store.list_all())]

        assert "multiple_primaries" in kinds

    def test_no_primary(self, store, seed):
        c = seed("a@x.com", "111")
        store.update_precedence_and_link(c.id, LinkPrecedence.SECONDARY, None)

        [violation] = audit_cluster(store.list_all())

        assert violation.kind == "no_primary"

    def test_stale_link(self, store, seed):
        top = seed("a@x.com", "111")
        middle = seed("b@x.com", "111", linked_id=top.id, minutes=1)
        bottom = seed("c@x.com", "333", linked_id=middle.id, minutes=2)

        [violation] = audit_contacts(store.list_all())

        assert violation.kind == "stale_link"
        assert violation.contact_ids == [bottom.id]

    def test_primary_not_oldest(self, store, seed):
        young_primary = seed("a@x.com", "111", minutes=5)
        seed("b@x.com", "111", linked_id=young_primary.id, minutes=0)

        kinds = [v.kind for v in audit_contacts(store.list_all())]

        assert kinds == ["primary_not_oldest"]


class TestMain:
    """Tests for the command line entry point."""

    def test_clean_database_exits_zero(self, store, seed, temp_db):
        seed("a@x.com", "111")

        assert main(["--db", temp_db]) == 0

    def test_violations_exit_non_zero_with_json(self, store, seed, temp_db, capsys):
        seed("a@x.com", "111")
        seed("a@x.com", "222", minutes=1)

        assert main(["--db", temp_db, "--json"]) == 1

        report = json.loads(capsys.readouterr().out)
        assert report[0]["kind"] == "multiple_primaries"
