import pytest
from sqlmodel import select

from signflow.errors import (
    AlreadyTerminal,
    ArtifactStoreError,
    DuplicatePosition,
    DuplicateSigner,
    IllegalTransition,
    InvalidConfiguration,
    InvalidEmail,
    NotActive,
)
from signflow.models import OutboundMessage, RequestStatus, SignerStatus, VerificationRecord
from signflow.schemas import RequestCreate, SignerInput


def _statuses(engine, request_id):
    return {s.id: s.status for s in engine.get_status(request_id).signers}


def test_sequential_signing_advances_one_signer_at_a_time(engine, session, make_request):
    request_id, (alice, bob) = make_request()

    with pytest.raises(NotActive):
        engine.submit_signature(bob)

    engine.submit_signature(alice, artifact_ref="sig-alice")
    view = engine.get_status(request_id)
    assert view.status == RequestStatus.IN_PROGRESS
    assert [s.active for s in view.signers] == [False, True]
    invites = session.exec(select(OutboundMessage).where(OutboundMessage.template == "invite")).all()
    assert [m.signer_id for m in invites] == [alice, bob]

    with pytest.raises(AlreadyTerminal):
        engine.submit_signature(alice)
    with pytest.raises(AlreadyTerminal):
        engine.decline_signature(alice, reason="changed my mind")

    engine.submit_signature(bob, artifact_ref="sig-bob")
    view = engine.get_status(request_id)
    assert view.status == RequestStatus.COMPLETED
    assert view.completed_at is not None
    assert view.artifact_hash
    records = session.exec(select(VerificationRecord)).all()
    assert len(records) == 1 and records[0].artifact_hash == view.artifact_hash


def test_resubmitting_leaves_state_untouched(engine, session, make_request):
    request_id, (alice, _) = make_request()
    engine.submit_signature(alice)
    before = engine.get_status(request_id)
    events_before = len(engine.audit_trail(request_id).events)

    with pytest.raises(AlreadyTerminal):
        engine.submit_signature(alice)

    assert engine.get_status(request_id) == before
    assert len(engine.audit_trail(request_id).events) == events_before


def test_parallel_decline_cancels_the_rest(engine, session, make_request):
    request_id, (a, b, c) = make_request(
        emails=("a@example.com", "b@example.com", "c@example.com"), mode="parallel")

    engine.decline_signature(b, reason="wrong amount")

    view = engine.get_status(request_id)
    assert view.status == RequestStatus.DECLINED
    assert _statuses(engine, request_id) == {a: SignerStatus.CANCELLED, b: SignerStatus.DECLINED, c: SignerStatus.CANCELLED}
    declined = session.exec(select(OutboundMessage).where(OutboundMessage.template == "declined")).all()
    assert {m.recipient for m in declined} == {"a@example.com", "b@example.com", "c@example.com", "rita@example.com"}
    assert all('"wrong amount"' in m.payload_json for m in declined)

    with pytest.raises(AlreadyTerminal):
        engine.submit_signature(a)


def test_decline_requires_current_turn(engine, make_request):
    _, (alice, bob) = make_request()
    with pytest.raises(NotActive):
        engine.decline_signature(bob)


def test_signing_a_draft_is_rejected(engine, make_request):
    _, (alice, _) = make_request(activate=False)
    with pytest.raises(NotActive):
        engine.submit_signature(alice)


def test_duplicate_email_is_case_insensitive(engine, make_request):
    request_id, _ = make_request(activate=False)
    with pytest.raises(DuplicateSigner):
        engine.add_signer(request_id, SignerInput(name="Alice Again", email="  ALICE@Example.com "))


def test_duplicate_sequential_position(engine, make_request):
    request_id, _ = make_request(activate=False)
    with pytest.raises(DuplicatePosition):
        engine.add_signer(request_id, SignerInput(name="Carol", email="carol@example.com", position=2))
    carol = engine.add_signer(request_id, SignerInput(name="Carol", email="carol@example.com"))
    assert carol.position == 3


def test_parallel_signers_have_no_position(engine, make_request):
    request_id, _ = make_request(activate=False, mode="parallel")
    dave = engine.add_signer(request_id, SignerInput(name="Dave", email="dave@example.com", position=7))
    assert dave.position is None


@pytest.mark.parametrize("email", ["not-an-email", "missing@", "two@@example.com", ""])
def test_invalid_email(engine, make_request, email):
    request_id, _ = make_request(activate=False)
    with pytest.raises(InvalidEmail):
        engine.add_signer(request_id, SignerInput(name="Eve", email=email))


def test_signers_frozen_after_activation(engine, make_request):
    request_id, _ = make_request()
    with pytest.raises(IllegalTransition):
        engine.add_signer(request_id, SignerInput(name="Late", email="late@example.com"))


def test_signer_limit(engine, document_id, ctx):
    ctx.settings.max_signers_per_request = 2
    request = engine.create_request(RequestCreate(
        title="Small", document_id=document_id,
        signers=[SignerInput(name="A", email="a@example.com"), SignerInput(name="B", email="b@example.com")],
    ))
    with pytest.raises(InvalidConfiguration):
        engine.add_signer(request.id, SignerInput(name="C", email="c@example.com"))


def test_view_before_notified_stamps_both(engine, make_request):
    request_id, (alice, _) = make_request()
    engine.mark_viewed(alice, client_ip="10.0.0.5", user_agent="pytest")
    me = engine.get_status(request_id).signers[0]
    assert me.status == SignerStatus.VIEWED
    assert me.notified_at is not None and me.viewed_at is not None
    assert engine.get_status(request_id).status == RequestStatus.IN_PROGRESS

    # a late delivery acknowledgement never moves the signer backwards
    from signflow import registry
    registry.mark_notified(engine.session, alice, engine.ctx)
    assert engine.get_status(request_id).signers[0].status == SignerStatus.VIEWED


def test_store_failure_rolls_back_completion(engine, store, make_request):
    request_id, (alice, bob) = make_request()
    engine.submit_signature(alice)
    store.fail_writes = True
    with pytest.raises(ArtifactStoreError):
        engine.submit_signature(bob)
    view = engine.get_status(request_id)
    assert view.status == RequestStatus.IN_PROGRESS
    assert view.signers[1].status != SignerStatus.SIGNED

    store.fail_writes = False
    engine.submit_signature(bob)
    assert engine.get_status(request_id).status == RequestStatus.COMPLETED


def test_padded_email_is_stored_trimmed(engine, make_request):
    request_id, _ = make_request(activate=False)
    carol = engine.add_signer(request_id, SignerInput(name="Carol", email="  carol@example.com "))
    assert carol.email == "carol@example.com"
    assert carol.email_normalized == "carol@example.com"


def test_signature_after_due_date_expires_the_request(engine, session, clock, make_request):
    request_id, (a, b) = make_request(mode="parallel")
    engine.submit_signature(a)
    clock.advance(days=31)

    with pytest.raises(NotActive):
        engine.submit_signature(b, artifact_ref="sig-late")

    view = engine.get_status(request_id)
    assert view.status == RequestStatus.EXPIRED
    assert view.artifact_hash is None
    assert _statuses(engine, request_id) == {a: SignerStatus.SIGNED, b: SignerStatus.EXPIRED}
    assert session.exec(select(VerificationRecord)).all() == []
    expired = session.exec(select(OutboundMessage).where(OutboundMessage.template == "expired")).all()
    assert "rita@example.com" in {m.recipient for m in expired}


def test_late_sequential_signer_is_not_recorded(engine, clock, make_request):
    request_id, (alice, bob) = make_request()
    clock.advance(days=31)

    with pytest.raises(NotActive):
        engine.submit_signature(alice)

    assert engine.get_status(request_id).status == RequestStatus.EXPIRED
    assert _statuses(engine, request_id) == {alice: SignerStatus.EXPIRED, bob: SignerStatus.EXPIRED}
    with pytest.raises(AlreadyTerminal):
        engine.submit_signature(alice)


def test_decline_after_due_date_is_refused(engine, clock, make_request):
    request_id, (alice, bob) = make_request()
    clock.advance(days=31)

    with pytest.raises(NotActive):
        engine.decline_signature(alice, reason="too late anyway")

    assert engine.get_status(request_id).status == RequestStatus.EXPIRED
    assert _statuses(engine, request_id) == {alice: SignerStatus.EXPIRED, bob: SignerStatus.EXPIRED}
    assert "declined" not in [e.type for e in engine.audit_trail(request_id).events]
