import unittest
from datetime import timedelta

from app.models.invitation import TeamInvite
from app.models.purchase import CreditPurchase
from app.services.credits_engine import utcnow
from app.services.scheduler import run_invite_sweep_job, run_purchase_reconcile_job, start_scheduler

from factories import make_team, make_user, memory_session_factory


class TestJobs(unittest.TestCase):
    def setUp(self):
        self.Session = memory_session_factory()
        self.db = self.Session()
        self.owner = make_user(self.db, "owner@studio.test")
        self.team = make_team(self.db, self.owner)

    def tearDown(self):
        self.db.close()

    def test_invite_sweep_job(self):
        self.db.add(
            TeamInvite(
                team_id=self.team.id,
                email="late@studio.test",
                role="member",
                invited_by_user_id=self.owner.id,
                token="stale-token",
                status="pending",
                expires_at=utcnow() - timedelta(hours=1),
            )
        )
        self.db.commit()
        self.assertEqual(run_invite_sweep_job(self.Session), 1)
        self.assertEqual(run_invite_sweep_job(self.Session), 0)
        self.db.expire_all()
        self.assertEqual(self.db.query(TeamInvite).one().status, "failed")

    def test_reconcile_job_expires_abandoned_checkouts(self):
        self.db.add(
            CreditPurchase(
                purchase_for="individual",
                user_id=self.owner.id,
                amount=50,
                status="pending",
                reference="checkout:old",
                created_at=utcnow() - timedelta(days=2),
            )
        )
        self.db.commit()
        self.assertEqual(run_purchase_reconcile_job(self.Session), 1)
        self.db.expire_all()
        self.assertEqual(self.db.query(CreditPurchase).one().status, "expired")

    def test_scheduler_respects_disabled_flag(self):
        self.assertIsNone(start_scheduler())


if __name__ == "__main__":
    unittest.main()
