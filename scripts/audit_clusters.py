#!/usr/bin/env python3
"""
Audit contact clusters for link consistency.

Groups every contact into clusters (shared email, shared phone number or a
link) and reports clusters that break the primary/secondary rules:

- no primary, or more than one primary
- a secondary whose linked id is not the cluster primary
- a primary that is not the oldest member
- a primary carrying a linked id

Read-only. Sending any affected email or phone number through /identify
repairs the cluster.

Usage:
    python scripts/audit_clusters.py [--db PATH] [--json]
"""
import argparse
import json
import logging
import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.contact_store import Contact, ContactStore  # noqa: E402

logger = logging.getLogger(__name__)


@dataclass
class ClusterViolation:
    """A rule broken by one cluster."""
    cluster_ids: list[int]
    kind: str
    detail: str
    contact_ids: list[int] = field(default_factory=list)


def group_clusters(contacts: list[Contact]) -> list[list[Contact]]:
    """Partition contacts into connected clusters, each ordered oldest first."""
    parent = {c.id: c.id for c in contacts}

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: int, b: int) -> None:
        ra, rb = find(a), find(b)
        if ra != rb:
            parent[max(ra, rb)] = min(ra, rb)

    first_by_email: dict[str, int] = {}
    first_by_phone: dict[str, int] = {}
    for contact in contacts:
        if contact.email is not None:
            union(contact.id, first_by_email.setdefault(contact.email, contact.id))
        if contact.phone_number is not None:
            union(contact.id, first_by_phone.setdefault(contact.phone_number, contact.id))
        if contact.linked_id is not None and contact.linked_id in parent:
            union(contact.id, contact.linked_id)

    clusters: dict[int, list[Contact]] = {}
    for contact in contacts:
        clusters.setdefault(find(contact.id), []).append(contact)
    return [sorted(members, key=lambda c: c.sort_key) for members in clusters.values()]


def audit_cluster(members: list[Contact]) -> list[ClusterViolation]:
    """Check one cluster against the primary/secondary rules."""
    ids = sorted(c.id for c in members)
    violations = []
    primaries = [c for c in members if c.is_primary]

    if not primaries:
        violations.append(ClusterViolation(ids, "no_primary", "cluster has no primary"))
        return violations
    if len(primaries) > 1:
        violations.append(ClusterViolation(
            ids, "multiple_primaries",
            f"{len(primaries)} primaries in one cluster",
            sorted(c.id for c in primaries),
        ))

    primary = primaries[0]
    if primary.linked_id is not None:
        violations.append(ClusterViolation(
            ids, "linked_primary", f"primary {primary.id} links to {primary.linked_id}", [primary.id],
        ))
    if members[0].id != primary.id:
        violations.append(ClusterViolation(
            ids, "primary_not_oldest",
            f"primary {primary.id} is younger than contact {members[0].id}",
            [primary.id, members[0].id],
        ))

    stale = [c.id for c in members if not c.is_primary and c.linked_id != primary.id]
    if stale:
        violations.append(ClusterViolation(
            ids, "stale_link", f"secondaries not linked to primary {primary.id}", stale,
        ))
    return violations


def audit_contacts(contacts: list[Contact]) -> list[ClusterViolation]:
    violations = []
    for members in group_clusters(contacts):
        violations.extend(audit_cluster(members))
    return violations


def main(argv: list[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Audit contact clusters for link consistency")
    parser.add_argument("--db", help="Path to contacts database (default from settings)")
    parser.add_argument("--json", action="store_true", help="Print violations as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    store = ContactStore(db_path=args.db)
    contacts = store.list_all()
    violations = audit_contacts(contacts)

    if args.json:
        print(json.dumps([asdict(v) for v in violations], indent=2))
    else:
        logger.info(f"Audited {len(contacts)} contacts")
        for v in violations:
            logger.warning(f"[{v.kind}] cluster {v.cluster_ids}: {v.detail} {v.contact_ids}")
        if not violations:
            logger.info("All clusters consistent")

    return 1 if violations else 0


if __name__ == "__main__":
    sys.exit(main())
