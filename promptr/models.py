from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Integer, String, DateTime
import datetime as dt

Base = declarative_base()

TRIALING = "trialing"
ACTIVE = "active"
INACTIVE = "inactive"
STATUSES = (TRIALING, ACTIVE, INACTIVE)
# statuses that grant use of the extension
ACCESS_STATUSES = (TRIALING, ACTIVE)


def _utcnow():
    return dt.datetime.now(dt.timezone.utc)


class UserAccess(Base):
    __tablename__ = "user_access"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False, index=True)
    access_token = Column(String, unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=INACTIVE)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def has_access(self) -> bool:
        return self.status in ACCESS_STATUSES
