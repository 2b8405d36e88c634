from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, default="")

    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")
    # pending | paid | completed | failed, kept in lockstep with status
    payment_status = Column(String, nullable=False, default="pending")

    # compare key for conditional writes; every write bumps it
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    # denormalized for display; never written by the confirmation flow
    program_title = Column(String, nullable=False, default="")
    program_slug = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    total_amount = Column(Integer, nullable=False, default=0)  # cents
    currency = Column(String, nullable=False, default="try")
