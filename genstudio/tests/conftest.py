from __future__ import annotations

import os
import tempfile

# Settings and the engine are read at import time; point them at an isolated sqlite file first.
_DB_PATH = os.path.join(tempfile.gettempdir(), f"genstudio-test-{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("INFERENCE_PROVIDER", "fake")
os.environ.setdefault("PAYMENT_PROVIDER", "fake")
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("OBJECT_STORE_PROVIDER", "memory")
os.environ.setdefault("CB_SHARED_STATE", "false")
os.environ.setdefault("AUTH_DEV_BYPASS", "true")
os.environ.setdefault("REPLICATE_USERNAME", "genstudio-test")
os.environ.setdefault("UPSCALE_MODEL_VERSION", "9283608cc6b7be6b65a8e44983db012355fde4132009bf99d976b2f0896856a3")
os.environ.setdefault("REPLICATE_WEBHOOK_SECRET", "whsec_dGVzdC1wcm92aWRlci1zZWNyZXQ=")
os.environ.setdefault("IDENTITY_WEBHOOK_SECRET", "whsec_dGVzdC1pZGVudGl0eS1zZWNyZXQ=")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_payments")
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-jwt-secret-with-enough-bytes")
os.environ.setdefault("WELCOME_GENERAL_CREDITS", "10")
os.environ.setdefault("WELCOME_AUX_CREDITS", "10")

import pytest  # noqa: E402

from genstudio.core.config import get_settings  # noqa: E402
from genstudio.domain.models import Base  # noqa: E402
from genstudio.persistence.db import engine  # noqa: E402
from genstudio.providers.inference.factory import reset_inference_provider  # noqa: E402
from genstudio.providers.llm.factory import reset_prompt_llm  # noqa: E402
from genstudio.providers.payments.factory import reset_payment_provider  # noqa: E402
from genstudio.providers.storage.factory import reset_object_store  # noqa: E402
from genstudio.services.resilience import reset_circuit_breakers  # noqa: E402
from genstudio.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test keeps ledger balances and job rows isolated.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    get_settings.cache_clear()
    reset_inference_provider()
    reset_object_store()
    reset_payment_provider()
    reset_prompt_llm()
    reset_circuit_breakers()
    reset_telemetry()
    yield
    get_settings.cache_clear()
