import os
import tempfile
import threading
import unittest

from app.core.errors import InsufficientCredits
from app.models.credit_account import UserCreditBalance
from app.models.credit_ledger import CreditLedger
from app.models.team import TeamMembership
from app.services.credits_engine import MemberAllocation, PersonalAccount, deduct_credit

from factories import add_member, file_session_factory, make_team, make_user


class TestConcurrentDeductions(unittest.TestCase):
    workers = 8
    credits = 3

    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.Session = file_session_factory(self.path)
        db = self.Session()
        try:
            self.owner = make_user(db, "owner@studio.test", balance=self.credits)
            self.owner_id = self.owner.id
            team = make_team(db, self.owner)
            self.team_id = team.id
            photo = make_user(db, "photo@studio.test")
            self.photo_id = photo.id
            add_member(db, team, photo, "photographer", allocated=self.credits)
        finally:
            db.close()

    def tearDown(self):
        self.Session.kw["bind"].dispose()
        os.remove(self.path)

    def _race(self, payer):
        barrier = threading.Barrier(self.workers)
        outcomes = []
        lock = threading.Lock()

        def spend():
            db = self.Session()
            try:
                barrier.wait()
                try:
                    deduct_credit(db, payer, 1)
                    result = "ok"
                except InsufficientCredits:
                    result = "insufficient"
            finally:
                db.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=spend) for _ in range(self.workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_personal_balance_never_oversold(self):
        outcomes = self._race(PersonalAccount(self.owner_id))
        self.assertEqual(outcomes.count("ok"), self.credits)
        self.assertEqual(outcomes.count("insufficient"), self.workers - self.credits)

        db = self.Session()
        try:
            balance = db.query(UserCreditBalance).filter(UserCreditBalance.user_id == self.owner_id).one().balance
            self.assertEqual(balance, 0)
            self.assertEqual(db.query(CreditLedger).filter(CreditLedger.event_type == "spend").count(), self.credits)
        finally:
            db.close()

    def test_member_allocation_never_oversold(self):
        outcomes = self._race(MemberAllocation(self.team_id, self.photo_id))
        self.assertEqual(outcomes.count("ok"), self.credits)

        db = self.Session()
        try:
            m = (
                db.query(TeamMembership)
                .filter(TeamMembership.team_id == self.team_id, TeamMembership.user_id == self.photo_id)
                .one()
            )
            self.assertEqual((m.allocated, m.used), (self.credits, self.credits))
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
