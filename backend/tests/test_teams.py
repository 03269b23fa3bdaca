import unittest

from app.core.errors import AccountNotFound, ForbiddenRoleCombination, LedgerError, NotAMember, NotTeamOwner, TeamDeleted
from app.models.credit_ledger import CreditLedger
from app.models.team import Team, TeamMembership
from app.services.credits_engine import MemberAllocation, TeamWallet, deduct_credit
from app.services.team_roles import TeamRole
from app.services.teams import (
    activate_membership,
    change_member_role,
    create_team,
    delete_team,
    leave_team,
    list_members,
    list_teams_for_user,
    remove_member,
)

from factories import add_member, make_team, make_user, memory_session_factory


class TeamsTestCase(unittest.TestCase):
    def setUp(self):
        self.db = memory_session_factory()()
        self.owner = make_user(self.db, "owner@studio.test")
        self.team = make_team(self.db, self.owner, wallet=100)
        self.admin = make_user(self.db, "admin@studio.test")
        self.agent = make_user(self.db, "agent@studio.test")
        self.photo = make_user(self.db, "photo@studio.test")
        add_member(self.db, self.team, self.admin, "admin")
        add_member(self.db, self.team, self.agent, "agent", allocated=20, used=5)
        add_member(self.db, self.team, self.photo, "photographer", allocated=10)

    def tearDown(self):
        self.db.close()

    def membership(self, user):
        self.db.expire_all()
        return (
            self.db.query(TeamMembership)
            .filter(TeamMembership.team_id == self.team.id, TeamMembership.user_id == user.id)
            .one()
        )

    def wallet(self):
        self.db.expire_all()
        return self.db.query(Team).filter(Team.id == self.team.id).one().wallet


class TestCreateAndList(TeamsTestCase):
    def test_create_team_starts_empty(self):
        t = create_team(self.db, self.agent.id, "  Second Studio ")
        self.assertEqual((t.name, t.wallet, t.owner_id), ("Second Studio", 0, self.agent.id))

    def test_blank_name(self):
        with self.assertRaises(LedgerError):
            create_team(self.db, self.owner.id, "   ")

    def test_list_shows_wallet_to_owner_and_admin_only(self):
        owner_view = list_teams_for_user(self.db, self.owner.id)
        self.assertEqual([(s.role, s.wallet) for s in owner_view], [("owner", 100)])
        self.assertEqual(list_teams_for_user(self.db, self.admin.id)[0].wallet, 100)
        agent_view = list_teams_for_user(self.db, self.agent.id)[0]
        self.assertIsNone(agent_view.wallet)
        self.assertEqual((agent_view.allocated, agent_view.used, agent_view.remaining), (20, 5, 15))

    def test_list_members_requires_membership(self):
        self.assertEqual(len(list_members(self.db, self.team.id, self.photo.id)), 3)
        stranger = make_user(self.db, "stranger@else.test")
        with self.assertRaises(NotAMember):
            list_members(self.db, self.team.id, stranger.id)


class TestRemoval(TeamsTestCase):
    def test_owner_removes_member_and_reclaims(self):
        self.assertEqual(remove_member(self.db, self.team.id, self.owner.id, self.agent.id), 15)
        self.assertEqual(self.wallet(), 115)
        m = self.membership(self.agent)
        self.assertEqual((m.status, m.allocated, m.used), ("removed", 5, 5))
        reclaim = self.db.query(CreditLedger).filter(CreditLedger.event_type == "reclaim").one()
        self.assertEqual((reclaim.delta, reclaim.actor_id), (15, self.owner.id))

    def test_owner_cannot_be_removed(self):
        with self.assertRaises(ForbiddenRoleCombination):
            remove_member(self.db, self.team.id, self.admin.id, self.owner.id)
        with self.assertRaises(ForbiddenRoleCombination):
            leave_team(self.db, self.team.id, self.owner.id)

    def test_agent_removes_photographer_but_not_admin(self):
        remove_member(self.db, self.team.id, self.agent.id, self.photo.id)
        self.assertEqual(self.membership(self.photo).status, "removed")
        with self.assertRaises(ForbiddenRoleCombination):
            remove_member(self.db, self.team.id, self.agent.id, self.admin.id)
        self.assertEqual(self.membership(self.admin).status, "active")

    def test_member_leaves(self):
        self.assertEqual(leave_team(self.db, self.team.id, self.photo.id), 10)
        self.assertEqual(self.wallet(), 110)
        with self.assertRaises(AccountNotFound):
            deduct_credit(self.db, MemberAllocation(self.team.id, self.photo.id))

    def test_removing_a_stranger(self):
        stranger = make_user(self.db, "stranger@else.test")
        with self.assertRaises(NotAMember):
            remove_member(self.db, self.team.id, self.owner.id, stranger.id)

    def test_reactivation_does_not_restore_credits(self):
        remove_member(self.db, self.team.id, self.owner.id, self.agent.id)
        activate_membership(self.db, self.team, self.agent.id, TeamRole.PHOTOGRAPHER)
        self.db.commit()
        m = self.membership(self.agent)
        self.assertEqual((m.status, m.role, m.allocated, m.used), ("active", "photographer", 5, 5))
        self.assertEqual(m.remaining, 0)
        self.assertEqual(self.wallet(), 115)


class TestRoles(TeamsTestCase):
    def test_owner_promotes_agent_to_admin(self):
        m = change_member_role(self.db, self.team.id, self.owner.id, self.agent.id, "admin")
        self.assertEqual(m.role, "admin")

    def test_admin_cannot_touch_admins(self):
        other = make_user(self.db, "other@studio.test")
        add_member(self.db, self.team, other, "admin")
        with self.assertRaises(ForbiddenRoleCombination):
            change_member_role(self.db, self.team.id, self.admin.id, other.id, "member")
        with self.assertRaises(ForbiddenRoleCombination):
            change_member_role(self.db, self.team.id, self.admin.id, self.agent.id, "admin")
        self.assertEqual(self.membership(self.agent).role, "agent")

    def test_owner_role_is_fixed(self):
        with self.assertRaises(ForbiddenRoleCombination):
            change_member_role(self.db, self.team.id, self.owner.id, self.owner.id, "admin")
        with self.assertRaises(ForbiddenRoleCombination):
            change_member_role(self.db, self.team.id, self.owner.id, self.agent.id, "owner")


class TestDelete(TeamsTestCase):
    def test_only_owner_deletes(self):
        with self.assertRaises(NotTeamOwner):
            delete_team(self.db, self.team.id, self.admin.id)

    def test_soft_delete_freezes_credits(self):
        deleted = delete_team(self.db, self.team.id, self.owner.id)
        self.assertTrue(deleted.is_deleted)
        self.assertEqual(self.wallet(), 100)
        with self.assertRaises(TeamDeleted):
            deduct_credit(self.db, TeamWallet(self.team.id))
        with self.assertRaises(TeamDeleted):
            deduct_credit(self.db, MemberAllocation(self.team.id, self.agent.id))
        self.assertEqual(list_teams_for_user(self.db, self.owner.id), [])
        with self.assertRaises(TeamDeleted):
            delete_team(self.db, self.team.id, self.owner.id)


if __name__ == "__main__":
    unittest.main()
