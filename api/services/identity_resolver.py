"""
Identity consolidation for contacts.

Given a new (email, phone_number) observation:

1. find every contact sharing either field (candidates)
2. resolve the cluster root the candidates point at
3. materialize the full cluster from the store
4. decide whether the observation needs a new secondary record
5. repair the cluster so exactly one primary exists and every other
   member links straight to it
6. re-read the cluster and summarize it

The store is the union-find structure: links are always one hop deep and
every merge step is a single-record update, so an aborted request never
leaves a multi-hop chain that the next request cannot collapse.

Steps 3 to 6 run under the identity locks of the observation and the cluster
locks of every primary the group points at (see identity_lock.py).
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from api.services.contact_store import (
    Contact,
    ContactInsertData,
    ContactStore,
    LinkPrecedence,
    get_contact_store,
)
from api.services.identity_lock import (
    IdentityLockManager,
    IdentityLockTimeout,
    cluster_keys,
    identity_keys,
)
from api.services.resilience import StoreError

logger = logging.getLogger(__name__)

# Upper bounds while collapsing stale chains and bridged clusters
MAX_LINK_HOPS = 16
MAX_GROUP_READS = 64

# Retries while the set of clusters a request touches keeps changing
MAX_CLUSTER_LOCK_ROUNDS = 8


class IdentityValidationError(ValueError):
    """Raised when an observation carries neither an email nor a phone number."""


@dataclass
class ContactSummary:
    """Canonical view of a settled cluster."""
    primary_contact_id: Optional[int]
    emails: list[str]
    phone_numbers: list[str]
    secondary_contact_ids: list[int]

    def to_dict(self) -> dict:
        return {
            "primaryContactId": self.primary_contact_id,
            "emails": self.emails,
            "phoneNumbers": self.phone_numbers,
            "secondaryContactIds": self.secondary_contact_ids,
        }


def normalize_field(value) -> Optional[str]:
    """
    Normalize an incoming email/phone value.

    Numbers become strings, surrounding whitespace is dropped and empty
    values become None.
    """
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise IdentityValidationError(f"Expected a string, got {type(value).__name__}")
    value = value.strip()
    return value or None


# ============================================================================
# Candidate Finder / Root Resolver
# ============================================================================

def find_candidates(
    store: ContactStore,
    email: Optional[str],
    phone_number: Optional[str],
) -> list[Contact]:
    """All contacts sharing the email or the phone number, oldest first."""
    return store.find_by_email_or_phone(email=email, phone_number=phone_number)


def resolve_root(candidates: list[Contact]) -> int:
    """
    Pick the cluster root for a non-empty candidate list.

    Each candidate points at its primary (own id when primary, linked id when
    secondary). The smallest pointer wins, which favors the oldest cluster
    since ids grow with creation time. With no pointer at all the oldest
    candidate is used.
    """
    if not candidates:
        raise ValueError("resolve_root needs at least one candidate")

    pointers = [c.primary_pointer for c in candidates if c.primary_pointer is not None]
    if pointers:
        return min(pointers)

    oldest = min(candidates, key=lambda c: c.sort_key)
    logger.warning(
        f"No primary pointer among contacts {[c.id for c in candidates]}; "
        f"falling back to oldest contact {oldest.id}"
    )
    return oldest.id


# ============================================================================
# Group Materializer
# ============================================================================

def _follow_links(root: int, by_id: dict[int, Contact]) -> int:
    """Walk linked ids upward from root until a primary, a gap or a cycle."""
    seen = {root}
    current = root
    for _ in range(MAX_LINK_HOPS):
        record = by_id.get(current)
        if record is None or record.is_primary or record.linked_id is None:
            break
        if record.linked_id in seen:
            logger.warning(f"Link cycle through contact {record.linked_id}; stopping at {current}")
            break
        seen.add(record.linked_id)
        current = record.linked_id
    return current


def materialize_group(
    store: ContactStore,
    root: int,
    candidates: Iterable[Contact] = (),
) -> tuple[int, list[Contact]]:
    """
    Read the authoritative cluster for root from the store.

    The cluster is re-read rather than assembled from the candidates, since
    members may share neither field with the observation. The groups of every
    other cluster the candidates point at are read too, so an observation that
    bridges clusters sees all of their primaries. A root that turns out to be a
    secondary (a stale chain) is followed upward.

    Returns:
        (root, group) where root may have moved up a chain and group is
        ordered by (created_at, id)
    """
    candidates = list(candidates)
    by_id: dict[int, Contact] = {c.id: c for c in candidates}

    pending = [root] + sorted({
        c.primary_pointer for c in candidates
        if c.primary_pointer is not None and c.primary_pointer != root
    })
    expanded: set[int] = set()
    hops = 0

    while pending and hops < MAX_GROUP_READS:
        group_id = pending.pop(0)
        if group_id in expanded:
            continue
        expanded.add(group_id)
        hops += 1

        for contact in store.find_by_primary_or_linked(group_id):
            by_id[contact.id] = contact

        record = by_id.get(group_id)
        if record is not None and not record.is_primary and record.linked_id is not None:
            logger.warning(
                f"Contact {group_id} is secondary of {record.linked_id}; collapsing link chain"
            )
            if record.linked_id not in expanded:
                pending.append(record.linked_id)

    if pending:
        logger.warning(f"Stopped expanding cluster of {root} after {MAX_GROUP_READS} reads")

    resolved_root = _follow_links(root, by_id)
    group = sorted(by_id.values(), key=lambda c: c.sort_key)
    return resolved_root, group


def touched_clusters(root: int, group: list[Contact]) -> set[int]:
    """
    Primary ids whose clusters a consolidation of group may read or rewrite.

    Covers the root and every member's primary pointer, including stale
    pointers at demoted primaries and dangling links.
    """
    touched = {root}
    touched.update(c.primary_pointer for c in group if c.primary_pointer is not None)
    return touched


def identify_primary(group: list[Contact], root: int) -> Optional[Contact]:
    """
    Find the primary of a materialized group.

    Prefers the root itself, then any primary, then the oldest member (which
    repair_cluster will promote).
    """
    if not group:
        return None
    for contact in group:
        if contact.id == root and contact.is_primary:
            return contact
    for contact in group:
        if contact.is_primary:
            return contact
    return min(group, key=lambda c: c.sort_key)


# ============================================================================
# Observation Classifier
# ============================================================================

def has_exact_match(
    group: list[Contact],
    email: Optional[str],
    phone_number: Optional[str],
) -> bool:
    """True if a member equals the observation on every provided field."""
    if email is None and phone_number is None:
        return False
    for contact in group:
        if email is not None and contact.email != email:
            continue
        if phone_number is not None and contact.phone_number != phone_number:
            continue
        return True
    return False


def has_partial_overlap(
    group: list[Contact],
    email: Optional[str],
    phone_number: Optional[str],
) -> bool:
    """True if some field is already known but the exact combination is not."""
    if has_exact_match(group, email, phone_number):
        return False
    email_known = email is not None and any(c.email == email for c in group)
    phone_known = phone_number is not None and any(c.phone_number == phone_number for c in group)
    return email_known or phone_known


def classify_observation(
    group: list[Contact],
    email: Optional[str],
    phone_number: Optional[str],
) -> bool:
    """
    Decide whether the observation needs a new secondary record.

    Any combination without an exact match is worth recording as long as it
    carries at least one field.
    """
    if has_exact_match(group, email, phone_number):
        return False
    return email is not None or phone_number is not None


# ============================================================================
# Cluster Repair Engine
# ============================================================================

def _set_link(
    store: ContactStore,
    contact: Contact,
    precedence: LinkPrecedence,
    linked_id: Optional[int],
) -> None:
    """Persist one precedence/link change and mirror it in memory."""
    if not store.update_precedence_and_link(contact.id, precedence, linked_id):
        raise StoreError(
            "update_precedence_and_link",
            f"Contact {contact.id} could not be updated (no such row)",
        )
    contact.link_precedence = precedence
    contact.linked_id = linked_id


def repair_cluster(store: ContactStore, group: list[Contact]) -> Optional[Contact]:
    """
    Enforce one primary per cluster with every other member linked to it.

    1. Several primaries: the oldest stays, the rest are demoted.
    2. No primary: the oldest member is promoted.
    3. Every other member is relinked to the primary if needed.

    Returns:
        The cluster primary, or None for an empty group
    """
    if not group:
        return None

    primaries = sorted((c for c in group if c.is_primary), key=lambda c: c.sort_key)

    if primaries:
        primary = primaries[0]
        for extra in primaries[1:]:
            logger.info(f"Demoting primary contact {extra.id} under older primary {primary.id}")
            _set_link(store, extra, LinkPrecedence.SECONDARY, primary.id)
    else:
        primary = min(group, key=lambda c: c.sort_key)
        logger.warning(f"Cluster has no primary; promoting oldest contact {primary.id}")
        _set_link(store, primary, LinkPrecedence.PRIMARY, None)

    for contact in group:
        if contact.id == primary.id:
            continue
        if contact.is_primary or contact.linked_id != primary.id:
            logger.info(f"Relinking contact {contact.id} from {contact.linked_id} to {primary.id}")
            _set_link(store, contact, LinkPrecedence.SECONDARY, primary.id)

    return primary


# ============================================================================
# Summary Builder
# ============================================================================

def _distinct(values: Iterable[Optional[str]]) -> list[str]:
    seen = []
    for value in values:
        if value is not None and value not in seen:
            seen.append(value)
    return seen


def build_summary(store: ContactStore, primary_id: Optional[int]) -> ContactSummary:
    """
    Summarize the committed cluster of primary_id.

    Emails and phone numbers start with the primary's own, then follow
    creation order. Secondary ids are ascending.
    """
    if primary_id is None:
        return ContactSummary(None, [], [], [])

    members = store.find_by_primary_or_linked(primary_id)
    primary = next((c for c in members if c.id == primary_id), None)
    others = [c for c in members if c.id != primary_id]
    ordered = ([primary] if primary else []) + others

    return ContactSummary(
        primary_contact_id=primary_id,
        emails=_distinct(c.email for c in ordered),
        phone_numbers=_distinct(c.phone_number for c in ordered),
        secondary_contact_ids=sorted(c.id for c in others),
    )


# ============================================================================
# Orchestration
# ============================================================================

class IdentityResolver:
    """
    Runs the full consolidation for one observation at a time per identity.

    All state lives in the store; nothing about clusters is cached between
    calls.
    """

    def __init__(
        self,
        store: Optional[ContactStore] = None,
        lock_manager: Optional[IdentityLockManager] = None,
    ):
        self.store = store or get_contact_store()
        self.lock_manager = lock_manager or IdentityLockManager()

    def identify(self, email=None, phone_number=None) -> ContactSummary:
        """
        Consolidate an observation and return its cluster summary.

        Raises:
            IdentityValidationError: neither field present (no store access)
            StoreError: any store failure; earlier writes are not rolled back
            IdentityLockTimeout: the identity or one of its clusters stayed
                locked past the timeout
        """
        email = normalize_field(email)
        phone_number = normalize_field(phone_number)
        if email is None and phone_number is None:
            raise IdentityValidationError(
                "At least email or phoneNumber must be provided and not be empty strings."
            )

        with self.lock_manager.hold(identity_keys(email, phone_number)):
            return self._consolidate(email, phone_number)

    def _consolidate(self, email: Optional[str], phone_number: Optional[str]) -> ContactSummary:
        """
        Read, decide and write while holding the locks of every touched cluster.

        The clusters a group points at are only known after reading it, so
        each round reads under the cluster locks gathered so far and retries
        with a larger set until the group points at nothing new.
        """
        held: set[int] = set()
        for _ in range(MAX_CLUSTER_LOCK_ROUNDS):
            with self.lock_manager.hold(cluster_keys(held)):
                candidates = find_candidates(self.store, email, phone_number)

                if not candidates:
                    created = self.store.insert(ContactInsertData(
                        email=email,
                        phone_number=phone_number,
                        linked_id=None,
                        link_precedence=LinkPrecedence.PRIMARY,
                    ))
                    logger.info(f"First sighting: created primary contact {created.id}")
                    return build_summary(self.store, created.id)

                root = resolve_root(candidates)
                root, group = materialize_group(self.store, root, candidates)
                needed = touched_clusters(root, group)

                if needed <= held:
                    primary = self._settle(email, phone_number, root, group)
                    return build_summary(self.store, primary.id if primary else None)

            logger.debug(f"Cluster locks {sorted(held)} do not cover {sorted(needed)}; retrying")
            held |= needed

        keys = ",".join(cluster_keys(held))
        logger.error(f"Cluster lock set kept growing after {MAX_CLUSTER_LOCK_ROUNDS} rounds: {keys}")
        raise IdentityLockTimeout(keys, self.lock_manager.timeout)

    def _settle(
        self,
        email: Optional[str],
        phone_number: Optional[str],
        root: int,
        group: list[Contact],
    ) -> Optional[Contact]:
        primary = identify_primary(group, root)

        if classify_observation(group, email, phone_number):
            created = self.store.insert(ContactInsertData(
                email=email,
                phone_number=phone_number,
                linked_id=primary.id,
                link_precedence=LinkPrecedence.SECONDARY,
            ))
            overlap = has_partial_overlap(group, email, phone_number)
            group.append(created)
            logger.info(
                f"Created secondary contact {created.id} under {primary.id} (partial overlap: {overlap})"
            )
        else:
            logger.debug(f"Exact match in cluster {primary.id}; no new contact")

        return repair_cluster(self.store, group)


# Singleton instance
_identity_resolver: Optional[IdentityResolver] = None


def get_identity_resolver() -> IdentityResolver:
    """Get singleton IdentityResolver instance."""
    global _identity_resolver
    if _identity_resolver is None:
        _identity_resolver = IdentityResolver()
    return _identity_resolver


def reset_identity_resolver() -> None:
    """Reset the singleton (for testing)."""
    global _identity_resolver
    _identity_resolver = None
