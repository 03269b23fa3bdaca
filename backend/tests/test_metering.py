import unittest
from datetime import datetime, timezone

from app.core.errors import AccountNotFound, InsufficientCredits, TeamDeleted
from app.models.credit_ledger import CreditLedger
from app.models.team import Team
from app.services.credits_engine import (
    MemberAllocation,
    PersonalAccount,
    TeamWallet,
    allocate_to_member,
    topup_team_wallet,
)
from app.services.invitations import accept_invitation, issue_invitation
from app.services import mailer
from app.services.metering import charge_for_generation, meter_generation
from app.services.team_roles import TeamRole, get_membership
from app.services.teams import create_team

from factories import add_member, make_team, make_user, memory_session_factory


class TestPayerResolution(unittest.TestCase):
    def setUp(self):
        self.db = memory_session_factory()()
        self.owner = make_user(self.db, "owner@studio.test", balance=5)
        self.team = make_team(self.db, self.owner, wallet=10)

    def tearDown(self):
        self.db.close()

    def test_no_team_uses_personal_balance(self):
        r = charge_for_generation(self.db, self.owner.id)
        self.assertEqual(r.payer, PersonalAccount(self.owner.id))
        self.assertEqual(r.kind, "personal")

    def test_owner_pays_from_wallet(self):
        r = charge_for_generation(self.db, self.owner.id, self.team.id)
        self.assertEqual(r.payer, TeamWallet(self.team.id))
        self.assertEqual(r.role, TeamRole.OWNER)

    def test_member_pays_from_allocation(self):
        agent = make_user(self.db, "agent@studio.test", balance=100)
        add_member(self.db, self.team, agent, "agent", allocated=2)
        r = charge_for_generation(self.db, agent.id, self.team.id)
        self.assertEqual(r.payer, MemberAllocation(self.team.id, agent.id))
        self.assertEqual(r.kind, "member_allocation")

    def test_non_member_falls_back_to_personal(self):
        stranger = make_user(self.db, "stranger@else.test", balance=1)
        r = charge_for_generation(self.db, stranger.id, self.team.id)
        self.assertEqual(r.payer, PersonalAccount(stranger.id))

    def test_missing_and_deleted_team(self):
        with self.assertRaises(AccountNotFound):
            charge_for_generation(self.db, self.owner.id, "no-such-team")
        self.team.deleted_at = datetime.now(timezone.utc)
        self.db.commit()
        with self.assertRaises(TeamDeleted):
            charge_for_generation(self.db, self.owner.id, self.team.id)

    def test_member_with_empty_allocation_is_refused(self):
        agent = make_user(self.db, "agent@studio.test", balance=100)
        add_member(self.db, self.team, agent, "agent")
        with self.assertRaises(InsufficientCredits):
            meter_generation(self.db, agent.id, self.team.id)
        # The member's own balance is never used as a fallback.
        self.assertEqual(self.db.query(CreditLedger).count(), 0)

    def test_meter_records_reference_and_metadata(self):
        charge = meter_generation(self.db, self.owner.id, self.team.id, reference="render-1", metadata={"room": "kitchen"})
        self.assertEqual(charge.remaining, 9)
        entry = self.db.query(CreditLedger).one()
        self.assertEqual(entry.reference, "render-1")
        self.assertEqual(entry.event_metadata, {"room": "kitchen"})
        self.assertEqual(entry.actor_id, self.owner.id)


class TestStudioScenario(unittest.TestCase):
    """Owner funds the wallet, invites a photographer, allocates, and the photographer renders."""

    def setUp(self):
        mailer.set_email_provider(mailer.DevEmailProvider())
        self.db = memory_session_factory()()

    def tearDown(self):
        self.db.close()
        mailer.set_email_provider(None)

    def test_end_to_end(self):
        owner = make_user(self.db, "owner@studio.test", name="Owner")
        team_id = create_team(self.db, owner.id, "Studio").id

        self.assertTrue(topup_team_wallet(self.db, team_id, 200, "pay_1").applied)
        self.assertFalse(topup_team_wallet(self.db, team_id, 200, "pay_1").applied)

        invite = issue_invitation(self.db, owner.id, team_id, "photo@studio.test", "photographer")
        accepted = accept_invitation(self.db, invite.token, name="Photographer", password="s3cret-pass")
        photographer_id = accepted.user_id

        allocate_to_member(self.db, owner.id, team_id, photographer_id, 50)
        for i in range(3):
            charge = meter_generation(self.db, photographer_id, team_id, reference=f"render-{i}")
        self.assertEqual(charge.remaining, 47)

        self.db.expire_all()
        self.assertEqual(self.db.query(Team).filter(Team.id == team_id).one().wallet, 150)
        m = get_membership(self.db, team_id, photographer_id)
        self.assertEqual((m.allocated, m.used, m.remaining), (50, 3, 47))
        spends = self.db.query(CreditLedger).filter(CreditLedger.event_type == "spend").all()
        self.assertEqual(len(spends), 3)
        self.assertTrue(all(s.account_kind == "member_allocation" for s in spends))


if __name__ == "__main__":
    unittest.main()
