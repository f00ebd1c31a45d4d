import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Text, Uuid
from sqlalchemy.orm import relationship

from machinegate.db.base import Base, utcnow


class Category(Base):
    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    machines = relationship("Machine", back_populates="category")
