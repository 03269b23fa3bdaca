from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.core.settings import settings
from app.models.credit_account import UserCreditBalance
from app.models.credit_ledger import CreditLedger
from app.models.team import Team
from app.models.user import User
from app.services.credits_engine import allocate_to_member, topup_team_wallet
from app.services.invitations import accept_invitation, issue_invitation
from app.services.metering import meter_generation
from app.services.team_roles import get_membership
from app.services.teams import create_team


def main() -> None:
    settings.bcrypt_rounds = 4
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        owner = User(email="owner@studio.test", name="Owner")
        db.add(owner)
        db.flush()
        db.add(UserCreditBalance(user_id=owner.id, balance=0))
        db.commit()

        team = create_team(db, owner.id, "Studio")
        assert team.wallet == 0, team.wallet
        team_id = team.id

        first = topup_team_wallet(db, team_id, 200, "pay_1")
        again = topup_team_wallet(db, team_id, 200, "pay_1")
        assert first.applied and not again.applied
        assert db.query(Team).filter(Team.id == team_id).one().wallet == 200

        invite = issue_invitation(db, owner.id, team_id, "photo@studio.test", "photographer")
        accepted = accept_invitation(db, invite.token, name="Photographer", password="s3cret-pass")
        assert not accepted.requires_signup
        photographer_id = accepted.user_id

        allocate_to_member(db, owner.id, team_id, photographer_id, 50)
        for i in range(3):
            meter_generation(db, photographer_id, team_id, reference=f"render-{i}")

        db.expire_all()
        wallet = db.query(Team).filter(Team.id == team_id).one().wallet
        membership = get_membership(db, team_id, photographer_id)
        assert wallet == 150, wallet
        assert membership.allocated == 50, membership.allocated
        assert membership.used == 3, membership.used
        assert membership.remaining == 47, membership.remaining

        spends = db.query(CreditLedger).filter(CreditLedger.event_type == "spend").all()
        assert len(spends) == 3
        assert all(s.account_kind == "member_allocation" for s in spends)
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
