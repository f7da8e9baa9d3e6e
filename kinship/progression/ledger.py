"""
Attestation ledger ("honesty policy").

A sign-off is a party's unverified declaration that something happened offline.
No proof is asked for, but a manual requirement only completes once both parties
have signed independently, so neither side can move the stage alone.
"""

import logging
from datetime import datetime

from .errors import NotARelationshipParty, ValidationError
from .requirements import apply_manual
from .state import Attestation, PartyRole, SigningStatus, Snapshot

log = logging.getLogger("kinship-progression")


def sign_off(snapshot: Snapshot, requirement_id: str, party_id: str, now: datetime) -> SigningStatus:
    rel = snapshot.relationship

    role = rel.role_of(party_id)
    if role is None:
        raise NotARelationshipParty(rel.id, party_id)

    req = snapshot.find_requirement(requirement_id)
    if req is not None and req.is_completed and snapshot.has_attestation(req.id, party_id):
        # a retry whose first response was lost, possibly after the stage moved on
        log.info("[REL %s] repeat sign-off on completed req=%s party=%s", rel.id, req.id, party_id)
        return SigningStatus.ALREADY_COMPLETED

    if rel.is_ended:
        raise ValidationError("This relationship has ended.", {"relationship_id": rel.id})
    if rel.is_frozen:
        raise ValidationError(
            "Progress is paused during the cooling-off period.",
            {"relationship_id": rel.id},
        )

    if req is None or req.stage != rel.current_stage:
        raise ValidationError(
            "This requirement is not part of the current stage.",
            {"requirement_id": requirement_id, "current_stage": rel.current_stage},
        )
    if not req.is_manual:
        raise ValidationError(
            "This requirement completes automatically and cannot be signed off.",
            {"requirement_id": requirement_id},
        )

    if req.is_completed:
        return SigningStatus.ALREADY_COMPLETED

    if snapshot.has_attestation(req.id, party_id):
        # retry of an earlier sign-off
        log.info("[REL %s] duplicate sign-off ignored req=%s party=%s", rel.id, req.id, party_id)
        return SigningStatus.WAITING_FOR_PARTNER

    snapshot.new_attestations.append(
        Attestation(relationship_id=rel.id, requirement_id=req.id, party_id=party_id, signed_at=now)
    )
    if role == PartyRole.INITIATOR:
        req.party_a_signed = True
    else:
        req.party_b_signed = True

    if apply_manual(req, snapshot, now):
        log.info("[REL %s] requirement completed by sign-off req=%s key=%s", rel.id, req.id, req.key)
        return SigningStatus.COMPLETED

    log.info("[REL %s] sign-off recorded req=%s party=%s role=%s", rel.id, req.id, party_id, role.value)
    return SigningStatus.WAITING_FOR_PARTNER
