import uuid
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from machinegate.db.base import Base, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=True, index=True)
    department_id = Column(Uuid, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    role = relationship("Role", back_populates="users")
    department = relationship("Department", back_populates="users")

    def __repr__(self) -> str:
        return f"<User {self.username}>"
