"""AppUser model - customers and administrators."""
from sqlalchemy import Column, String, Boolean, DateTime
from werkzeug.security import generate_password_hash, check_password_hash

from storefront.database import Base, BigIntPK, utcnow


class AppUser(Base):
    """Storefront account. ``role`` is 'customer' or 'admin'."""

    __tablename__ = 'app_user'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default='customer')
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password, method='scrypt')

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == 'admin'

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'full_name': self.full_name, 'role': self.role}

    def __repr__(self):
        return f"<AppUser(id={self.id}, email='{self.email}', role='{self.role}')>"
