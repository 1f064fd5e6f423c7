import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# -------------------------------------------------
# Env
# -------------------------------------------------

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "insulationpal")

APP_PUBLIC_NAME = "InsulationPal Lead Exchange"

# Auth / JWT
# JWT_SECRET_KEY must be provided via environment in production
SECRET_KEY = os.environ["JWT_SECRET_KEY"]
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("JWT_EXPIRE_MINUTES", "60"))

# SMTP / Email
SMTP_HOST = os.environ.get("SMTP_HOST")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER")
SMTP_PASS = os.environ.get("SMTP_PASS")
EMAIL_FROM = os.environ.get("EMAIL_FROM", SMTP_USER or "")
EMAIL_REPLY_TO = os.environ.get("EMAIL_REPLY_TO", SMTP_USER or "")
ADMIN_NOTIFICATION_EMAIL = os.environ.get("ADMIN_NOTIFICATION_EMAIL", "")
NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "5"))

# Optional admin account created at startup
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD")

# Money & lifetimes
ESCROW_COMMISSION_RATE_BPS = int(os.environ.get("ESCROW_COMMISSION_RATE_BPS", "1000"))
INVITATION_TTL_HOURS = int(os.environ.get("INVITATION_TTL_HOURS", "48"))
VERIFICATION_TOKEN_TTL_HOURS = int(os.environ.get("VERIFICATION_TOKEN_TTL_HOURS", "24"))

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

POLICY_CONFIG_DIR = ROOT_DIR / "config"
SPAM_POLICY_PATH = Path(os.environ.get("SPAM_POLICY_PATH", POLICY_CONFIG_DIR / "spam_policy.json"))


def frontend_url(path: str) -> Optional[str]:
    base = os.environ.get("FRONTEND_URL")
    if not base:
        return None
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        logging.getLogger(__name__).exception("Could not read config file %s", path)
        return None


# -------------------------------------------------
# Config model (feature flags)
# -------------------------------------------------


class AppConfig(BaseModel):
    auto_route_new_leads: bool = True
    max_contractor_offers_per_lead: int = 3
    lead_credit_cost: int = 0

    model_config = ConfigDict(extra="ignore")


async def get_app_config(db) -> AppConfig:
    doc = await db.app_config.find_one({"id": "default"})
    if not doc:
        cfg = AppConfig()
        await db.app_config.insert_one({"id": "default", **cfg.model_dump()})
        return cfg
    return AppConfig(**doc)


# -------------------------------------------------
# Anti-spam policy
# -------------------------------------------------


class SuspiciousPatterns(BaseModel):
    name: str = r"^(test|admin|spam|fake|bot|user\d+|temp|demo|sample)"
    business_name: str = r"^(test|spam|fake|bot|temp|demo|sample|company\d+)"
    email_local_part: str = r"^(test|admin|spam|fake|bot|user\d+|temp|demo|sample)$"
    phone_digits: str = r"^(123|000|111|555|999)"
    license_number: str = r"^(test|spam|fake|bot|temp|demo|sample|123|000|111)"


class SpamPolicy(BaseModel):
    """Tunable inputs for the registration gatekeeper.

    Shipped as JSON so the lists can be refreshed without a deploy.
    """

    min_dwell_seconds: float = 10.0
    email_rate_limit_hours: int = 24
    max_signups_per_address_per_hour: int = 5
    disposable_domains: List[str] = Field(default_factory=list)
    patterns: SuspiciousPatterns = Field(default_factory=SuspiciousPatterns)

    model_config = ConfigDict(extra="ignore")

    def is_disposable(self, domain: str) -> bool:
        domain = domain.lower()
        return any(domain == d or domain.endswith("." + d) for d in self.disposable_domains)


_spam_policy: Optional[SpamPolicy] = None


def load_spam_policy(path: Path = SPAM_POLICY_PATH) -> SpamPolicy:
    data = load_json(path)
    if data is None:
        return SpamPolicy()
    return SpamPolicy(**data)


def get_spam_policy() -> SpamPolicy:
    global _spam_policy
    if _spam_policy is None:
        _spam_policy = load_spam_policy()
    return _spam_policy
