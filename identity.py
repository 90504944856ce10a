"""Identity resolution over Contact records.

An incoming observation (email and/or phone number) is matched against the
store, expanded to the identity groups it touches, and then either recorded
as a new primary, attached to its group as a secondary, or used to merge two
groups under the older primary. The result is rendered as a consolidated
view of the final group.
"""

from typing import Dict, List, Optional

from db_models import Contact, ContactResponse, LinkPrecedence, Observation
from db_setup import ContactStore
from errors import InvalidObservation, InvariantViolation, MergeConflict
from log_setup import get_logger

logger = get_logger(__name__)


def make_observation(email: str = None, phone: str = None) -> Observation:
    observation = Observation(email=email, phoneNumber=phone)
    if observation.email is None and observation.phoneNumber is None:
        raise InvalidObservation("Either email or phoneNumber must be provided")
    return observation


def find_candidate_groups(store: ContactStore, observation: Observation) -> List[Contact]:
    """Full membership of every group the observation touches.

    Returns an empty list when nothing matches. Records are ordered by
    ``createdAt`` then ``id``.
    """
    matched = store.find_by_match(observation.email, observation.phoneNumber)
    if not matched:
        return []

    group_ids = {contact.group_id for contact in matched}
    return store.find_by_group_ids(group_ids)


def split_groups(records: List[Contact]) -> Dict[int, List[Contact]]:
    groups = {}
    for contact in records:
        groups.setdefault(contact.group_id, []).append(contact)
    return groups


def pick_primary(members: List[Contact]) -> Contact:
    """The group's primary, or its earliest record when that is ambiguous."""
    ordered = sorted(members, key=lambda c: c.age_key)
    primaries = [c for c in ordered if c.linkPrecedence == LinkPrecedence.PRIMARY]
    if len(primaries) == 1:
        return primaries[0]

    fallback = ordered[0]
    logger.warning(
        "Identity group has %d primary records; treating contact %s as primary",
        len(primaries),
        fallback.id,
        extra={"member_ids": [c.id for c in ordered]},
    )
    return fallback


def find_exact_duplicate(records: List[Contact], observation: Observation) -> Optional[Contact]:
    return next((c for c in records if observation.matches(c)), None)


def consolidate(members: List[Contact]) -> ContactResponse:
    ordered = sorted(members, key=lambda c: c.age_key)
    primary = pick_primary(ordered)

    emails = [primary.email] if primary.email else []
    phone_numbers = [primary.phoneNumber] if primary.phoneNumber else []
    secondary_ids = []

    for contact in ordered:
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)
        if contact.id != primary.id:
            secondary_ids.append(contact.id)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=secondary_ids,
    )


def merge_groups(
    store: ContactStore,
    observation: Observation,
    first: List[Contact],
    second: List[Contact],
) -> int:
    """Fold the younger of two groups into the older one.

    Demoting the younger primary, re-pointing its secondaries and recording
    the observation happen in one transaction. Returns the id the merged
    group is keyed on.
    """
    older, newer = sorted((pick_primary(first), pick_primary(second)), key=lambda c: c.age_key)
    # Equals older.id unless older is the stand-in for a missing primary.
    target_id = older.group_id

    with store.transaction():
        # Another request may have merged either group since we read it.
        for seen in (older, newer):
            current = store.get(seen.id)
            if (
                current is None
                or current.linkPrecedence != seen.linkPrecedence
                or current.linkedId != seen.linkedId
            ):
                logger.warning(
                    "Contact %s changed before merge into %s", seen.id, older.id
                )
                raise MergeConflict(
                    f"Contact {seen.id} was modified concurrently; retry the request"
                )

        store.update(
            newer.id,
            {"linkedId": target_id, "linkPrecedence": LinkPrecedence.SECONDARY},
        )
        repointed = store.update_many(newer.group_id, {"linkedId": target_id})

        members = store.find_by_group_ids({target_id})
        if find_exact_duplicate(members, observation) is None:
            store.create(
                observation.email,
                observation.phoneNumber,
                target_id,
                LinkPrecedence.SECONDARY,
            )

    logger.info(
        "Merged contact %s into %s",
        newer.id,
        older.id,
        extra={"primary_id": target_id, "demoted_id": newer.id, "repointed": repointed},
    )
    return target_id


def resolve_identity(store: ContactStore, email: str = None, phone: str = None) -> ContactResponse:
    """Record an observation and return the consolidated view of its identity."""
    observation = make_observation(email, phone)

    records = find_candidate_groups(store, observation)
    if not records:
        contact = store.create(
            observation.email, observation.phoneNumber, None, LinkPrecedence.PRIMARY
        )
        logger.info("Created primary contact %s", contact.id)
        return consolidate([contact])

    groups = split_groups(records)
    if len(groups) > 2:
        logger.error(
            "Observation matched %d identity groups", len(groups),
            extra={"group_ids": list(groups)},
        )
        raise InvariantViolation(
            f"Observation matched {len(groups)} identity groups; at most two are possible"
        )

    duplicate = find_exact_duplicate(records, observation)
    if duplicate is not None:
        logger.debug("Observation already recorded as contact %s", duplicate.id)
        return consolidate(groups[duplicate.group_id])

    email_contact = None
    phone_contact = None
    if observation.email is not None:
        email_contact = next((c for c in records if c.email == observation.email), None)
    if observation.phoneNumber is not None:
        phone_contact = next((c for c in records if c.phoneNumber == observation.phoneNumber), None)

    if (
        email_contact is not None
        and phone_contact is not None
        and email_contact.group_id != phone_contact.group_id
    ):
        primary_id = merge_groups(
            store,
            observation,
            groups[email_contact.group_id],
            groups[phone_contact.group_id],
        )
        return consolidate(store.find_by_group_ids({primary_id}))

    anchor = email_contact if email_contact is not None else phone_contact
    members = groups[anchor.group_id]
    primary = pick_primary(members)
    contact = store.create(
        observation.email, observation.phoneNumber, primary.group_id, LinkPrecedence.SECONDARY
    )
    logger.info("Linked contact %s to primary %s", contact.id, primary.group_id)
    return consolidate(members + [contact])
