"""
Tests for the shared anonymous session state.
"""
import uuid
from grappa import should

from anonchat.session import SessionState


def test_new_session_has_identity_and_no_token():
    session = SessionState()

    uuid.UUID(session.current())
    session.token | should.equal(None)
    session.proof_token | should.equal(None)
    session.has_token | should.equal(False)
    session.keep_conversation | should.equal(False)


def test_renew_changes_identity_and_clears_conversation():
    session = SessionState()
    first = session.current()
    session.mark_conversation("conv-1")
    session.keep_conversation | should.be.true

    session.renew() | should.equal(session.current())

    (session.current() != first) | should.be.true
    session.keep_conversation | should.equal(False)


def test_renew_keeps_credentials():
    session = SessionState()
    session.store_credentials("token-1", "proof-1")

    session.renew()

    session.token | should.equal("token-1")


def test_new_token_replaces_proof_token():
    session = SessionState()
    session.store_credentials("token-1", "proof-1")

    session.store_credentials("token-2")

    session.token | should.equal("token-2")
    session.proof_token | should.equal(None)
    session.has_token | should.be.true


def test_mark_conversation_follows_latest_event():
    session = SessionState()

    session.mark_conversation("conv-1")
    session.keep_conversation | should.be.true
    session.mark_conversation(None)
    session.keep_conversation | should.equal(False)
