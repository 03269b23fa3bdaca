import os
import tempfile
import unittest
from datetime import timedelta

from sqlalchemy import event

from app.core.errors import (
    AccountNotFound,
    ForbiddenRoleCombination,
    InvalidToken,
    InviteDeliveryFailed,
    InviteExpired,
    MemberExists,
    NotAMember,
)
from app.core.security import encode_token, verify_password
from app.models.credit_account import UserCreditBalance
from app.models.invitation import TeamInvite
from app.models.team import TeamMembership
from app.models.user import User
from app.services import mailer
from app.services.credits_engine import utcnow
from app.services.invitations import (
    accept_invitation,
    decode_invite_token,
    issue_invitation,
    list_invitations,
    reinvite,
    sweep_expired_invitations,
)

from factories import add_member, file_session_factory, make_team, make_user, memory_session_factory


class FailingEmailProvider(mailer.EmailProvider):
    def send(self, message):
        return False


class InvitationTestCase(unittest.TestCase):
    def setUp(self):
        self.outbox = mailer.DevEmailProvider()
        mailer.set_email_provider(self.outbox)
        self.db = memory_session_factory()()
        self.owner = make_user(self.db, "owner@studio.test", name="Olive")
        self.team = make_team(self.db, self.owner, name="Harbor Homes")
        self.now = utcnow()

    def tearDown(self):
        self.db.close()
        mailer.set_email_provider(None)

    def invite_row(self, email):
        self.db.expire_all()
        return self.db.query(TeamInvite).filter(TeamInvite.email == email).one()

    def membership(self, user_id):
        self.db.expire_all()
        return (
            self.db.query(TeamMembership)
            .filter(TeamMembership.team_id == self.team.id, TeamMembership.user_id == user_id)
            .first()
        )


class TestIssue(InvitationTestCase):
    def test_sends_mail_with_accept_link(self):
        invite = issue_invitation(self.db, self.owner.id, self.team.id, " Photo@Studio.test ", "photographer", now=self.now)
        self.assertEqual(invite.email, "photo@studio.test")
        self.assertEqual(invite.status, "pending")
        self.assertEqual(len(self.outbox.sent), 1)
        message = self.outbox.sent[0]
        self.assertEqual(message.to, "photo@studio.test")
        self.assertIn("Harbor Homes", message.subject)
        self.assertIn(f"/team/invite/accept?token={invite.token}", message.text_body)

        claims = decode_invite_token(invite.token)
        self.assertEqual(claims["team_id"], self.team.id)
        self.assertEqual(claims["role"], "photographer")
        self.assertEqual(claims["invited_by"], self.owner.id)

    def test_reminder_subject(self):
        issue_invitation(self.db, self.owner.id, self.team.id, "photo@studio.test", "photographer", now=self.now)
        reinvite(self.db, self.owner.id, self.team.id, "photo@studio.test", now=self.now)
        self.assertTrue(self.outbox.sent[-1].subject.startswith("Reminder: "))
        self.assertEqual(self.db.query(TeamInvite).count(), 1)

    def test_reinvite_without_invitation(self):
        with self.assertRaises(AccountNotFound):
            reinvite(self.db, self.owner.id, self.team.id, "nobody@studio.test")

    def test_owner_and_active_members_cannot_be_invited(self):
        with self.assertRaises(MemberExists):
            issue_invitation(self.db, self.owner.id, self.team.id, "owner@studio.test", "admin")
        agent = make_user(self.db, "agent@studio.test")
        add_member(self.db, self.team, agent, "agent")
        with self.assertRaises(MemberExists):
            issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "member")
        self.assertEqual(self.outbox.sent, [])

    def test_agent_may_only_invite_photographers(self):
        agent = make_user(self.db, "agent@studio.test")
        add_member(self.db, self.team, agent, "agent")
        issue_invitation(self.db, agent.id, self.team.id, "photo@studio.test", "photographer")
        with self.assertRaises(ForbiddenRoleCombination):
            issue_invitation(self.db, agent.id, self.team.id, "member@studio.test", "member")

    def test_outsider_cannot_invite(self):
        stranger = make_user(self.db, "stranger@else.test")
        with self.assertRaises(NotAMember):
            issue_invitation(self.db, stranger.id, self.team.id, "photo@studio.test", "photographer")

    def test_delivery_failure_marks_invitation_failed(self):
        mailer.set_email_provider(FailingEmailProvider())
        with self.assertRaises(InviteDeliveryFailed):
            issue_invitation(self.db, self.owner.id, self.team.id, "photo@studio.test", "photographer")
        self.assertEqual(self.invite_row("photo@studio.test").status, "failed")

    def test_listing_requires_membership(self):
        issue_invitation(self.db, self.owner.id, self.team.id, "photo@studio.test", "photographer")
        self.assertEqual([i.email for i in list_invitations(self.db, self.team.id, self.owner.id)], ["photo@studio.test"])


class TestAccept(InvitationTestCase):
    def test_new_user_must_sign_up(self):
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "photo@studio.test", "photographer", now=self.now)
        result = accept_invitation(self.db, invite.token, now=self.now)
        self.assertTrue(result.requires_signup)
        self.assertEqual(result.email, "photo@studio.test")
        self.assertIsNone(self.db.query(User).filter(User.email == "photo@studio.test").first())
        self.assertEqual(self.invite_row("photo@studio.test").status, "pending")

    def test_signup_creates_user_and_membership(self):
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "photo@studio.test", "photographer", now=self.now)
        result = accept_invitation(self.db, invite.token, name="Pat", password="correct-horse", now=self.now)
        self.assertFalse(result.requires_signup)
        user = self.db.query(User).filter(User.email == "photo@studio.test").one()
        self.assertEqual(result.user_id, user.id)
        self.assertTrue(verify_password("correct-horse", user.password_hash))
        self.assertIsNotNone(self.db.query(UserCreditBalance).filter(UserCreditBalance.user_id == user.id).first())

        m = self.membership(user.id)
        self.assertEqual((m.role, m.status, m.allocated, m.used), ("photographer", "active", 0, 0))
        row = self.invite_row("photo@studio.test")
        self.assertEqual(row.status, "accepted")
        self.assertEqual(row.accepted_by_user_id, user.id)

    def test_existing_user_joins_without_password(self):
        user = make_user(self.db, "agent@studio.test")
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "agent", now=self.now)
        result = accept_invitation(self.db, invite.token, now=self.now)
        self.assertEqual(result.user_id, user.id)
        self.assertEqual(self.membership(user.id).role, "agent")

    def test_accepting_twice_is_idempotent(self):
        user = make_user(self.db, "agent@studio.test")
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "agent", now=self.now)
        accept_invitation(self.db, invite.token, now=self.now)
        again = accept_invitation(self.db, invite.token, now=self.now)
        self.assertTrue(again.already_accepted)
        self.assertEqual(again.user_id, user.id)
        self.assertEqual(self.db.query(TeamMembership).filter(TeamMembership.user_id == user.id).count(), 1)

    def test_expired_invitation(self):
        make_user(self.db, "agent@studio.test")
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "agent", now=self.now)
        with self.assertRaises(InviteExpired):
            accept_invitation(self.db, invite.token, now=self.now + timedelta(hours=25))
        self.assertEqual(self.invite_row("agent@studio.test").status, "failed")
        self.assertEqual(self.db.query(TeamMembership).count(), 0)
        with self.assertRaises(InviteExpired):
            accept_invitation(self.db, invite.token, now=self.now)

    def test_reissue_invalidates_previous_token(self):
        make_user(self.db, "agent@studio.test")
        first = issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "agent", now=self.now)
        old_token = first.token
        issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "member", now=self.now)
        with self.assertRaises(InvalidToken):
            accept_invitation(self.db, old_token, now=self.now)
        self.assertEqual(self.db.query(TeamMembership).count(), 0)

    def test_reissue_revives_expired_invitation(self):
        user = make_user(self.db, "agent@studio.test")
        issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "agent", now=self.now - timedelta(days=2))
        sweep_expired_invitations(self.db, now=self.now)
        fresh = reinvite(self.db, self.owner.id, self.team.id, "agent@studio.test", now=self.now)
        self.assertEqual(fresh.status, "pending")
        accept_invitation(self.db, fresh.token, now=self.now)
        self.assertEqual(self.membership(user.id).status, "active")

    def test_garbage_and_foreign_tokens(self):
        with self.assertRaises(InvalidToken):
            accept_invitation(self.db, "not-a-jwt")
        access_like = encode_token({"sub": self.owner.id, "type": "ACCESS", "exp": self.now + timedelta(hours=1)})
        with self.assertRaises(InvalidToken):
            accept_invitation(self.db, access_like)

    def test_rejoining_member_gets_nothing_spendable(self):
        user = make_user(self.db, "agent@studio.test")
        m = add_member(self.db, self.team, user, "agent", allocated=20, used=12)
        m.status = "removed"
        m.allocated = 12
        self.db.commit()
        invite = issue_invitation(self.db, self.owner.id, self.team.id, "agent@studio.test", "photographer", now=self.now)
        accept_invitation(self.db, invite.token, now=self.now)
        m = self.membership(user.id)
        self.assertEqual((m.status, m.role, m.allocated, m.used), ("active", "photographer", 12, 12))


class TestSweep(InvitationTestCase):
    def test_marks_only_stale_pending_invitations(self):
        issue_invitation(self.db, self.owner.id, self.team.id, "old@studio.test", "member", now=self.now - timedelta(days=2))
        issue_invitation(self.db, self.owner.id, self.team.id, "new@studio.test", "member", now=self.now)
        self.assertEqual(sweep_expired_invitations(self.db, now=self.now), 1)
        self.assertEqual(self.invite_row("old@studio.test").status, "failed")
        self.assertEqual(self.invite_row("new@studio.test").status, "pending")
        self.assertEqual(sweep_expired_invitations(self.db, now=self.now), 0)


class TestConcurrentIssue(unittest.TestCase):
    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.Session = file_session_factory(self.path)
        self.outbox = mailer.DevEmailProvider()
        mailer.set_email_provider(self.outbox)
        db = self.Session()
        try:
            owner = make_user(db, "owner@studio.test")
            self.owner_id = owner.id
            self.team_id = make_team(db, owner).id
        finally:
            db.close()

    def tearDown(self):
        mailer.set_email_provider(None)
        self.Session.kw["bind"].dispose()
        os.remove(self.path)

    def test_concurrent_first_issue_overwrites_existing_row(self):
        db = self.Session()
        other = self.Session()
        fired = []

        def insert_competing_row(session, flush_context, instances):
            if fired or not any(isinstance(obj, TeamInvite) for obj in session.new):
                return
            fired.append(True)
            other.add(
                TeamInvite(
                    team_id=self.team_id,
                    email="photo@studio.test",
                    role="member",
                    invited_by_user_id=self.owner_id,
                    token="competing-token",
                    status="pending",
                    expires_at=utcnow() + timedelta(hours=1),
                )
            )
            other.commit()

        event.listen(db, "before_flush", insert_competing_row)
        try:
            invite = issue_invitation(db, self.owner_id, self.team_id, "photo@studio.test", "photographer")
            token = invite.token
        finally:
            event.remove(db, "before_flush", insert_competing_row)
            db.close()
            other.close()

        self.assertEqual(fired, [True])
        check = self.Session()
        try:
            row = check.query(TeamInvite).one()
            self.assertEqual(row.token, token)
            self.assertNotEqual(row.token, "competing-token")
            self.assertEqual((row.role, row.status), ("photographer", "pending"))
        finally:
            check.close()
        self.assertEqual(len(self.outbox.sent), 1)


if __name__ == "__main__":
    unittest.main()
