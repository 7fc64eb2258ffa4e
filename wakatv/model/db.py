from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Code(Base):
    __tablename__ = "codes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=False, unique=True)
    used = Column(Boolean, nullable=False, default=False, index=True)
    # both set on claim, both cleared on release
    used_by = Column(String, nullable=True)
    used_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class Transaction(Base):
    __tablename__ = "logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    reference = Column(String, nullable=False, index=True)
    codes = Column(Text, nullable=False, default="")
    created_at = Column(Float, nullable=False, index=True)


class ReferenceGate(Base):
    __tablename__ = "reference_gates"
    reference = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class ReferralAccount(Base):
    __tablename__ = "referral_accounts"
    email = Column(String, primary_key=True)
    referral_code = Column(String, nullable=False, unique=True)
    referred_count = Column(Integer, nullable=False, default=0)
    rewards_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class ReferralLink(Base):
    __tablename__ = "referral_links"
    __table_args__ = (
        UniqueConstraint("referrer_email", "referee_email",
                         name="uq_referral_link"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_email = Column(String, nullable=False, index=True)
    referee_email = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
