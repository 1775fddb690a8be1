# backend/tests/factories/user_factory.py

import uuid

import factory

from riskauth.core.security import get_password_hash  # Same peppered hashing as the app
from riskauth.db.models.user import User

DEFAULT_PASSWORD = "password123"


class UserFactory(factory.Factory):
    """
    Factory for building User model instances for testing.

    Only builds; the `make_user` fixture adds and commits the instance.
    """

    class Meta:
        model = User
        # 'password' is not a model column, only the source of hashed_password
        exclude = ("password",)

    id: uuid.UUID = factory.LazyFunction(uuid.uuid4)
    username: str = factory.Sequence(lambda n: f"user{n}")
    email: str = factory.LazyAttribute(lambda o: f"{o.username}@example.com")
    password: str = DEFAULT_PASSWORD
    hashed_password: str = factory.LazyAttribute(lambda o: get_password_hash(o.password))
    is_active: bool = True
    is_superuser: bool = False
    is_verified: bool = True
    mfa_enabled: bool = False
    mfa_secret = None
    failed_login_count: int = 0
    account_locked: bool = False
