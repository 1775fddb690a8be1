# backend/riskauth/db/base.py

# Import all SQLAlchemy models so that Base.metadata knows every table.
# The test fixtures and schema tooling import Base from here.
# When you add a new model, you must import it here.
from riskauth.db.base_class import Base  # noqa: F401
from riskauth.db.models.audit_log import AuditLog  # noqa: F401
from riskauth.db.models.backup_code import BackupCode  # noqa: F401
from riskauth.db.models.login_attempt import LoginAttempt  # noqa: F401
from riskauth.db.models.oauth2_link import OAuth2UserLink  # noqa: F401
from riskauth.db.models.one_time_password import OneTimePassword  # noqa: F401
from riskauth.db.models.password_history import PasswordHistory  # noqa: F401
from riskauth.db.models.trusted_device import TrustedDevice  # noqa: F401
from riskauth.db.models.user import User  # noqa: F401
