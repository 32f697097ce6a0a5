"""
Pytest configuration and shared fixtures.
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

# Set test environment variables before importing app modules
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="swap-engine-tests-")
os.environ.setdefault("SWAP_ENV", "development")
os.environ.setdefault("SWAP_STORAGE_BACKEND", "memory")
os.environ.setdefault("SWAP_DATA_DIR", _TEST_DATA_DIR)

import pytest  # noqa: E402

from swap_engine.config import Settings, StorageBackend, get_settings  # noqa: E402
from swap_engine.domain.order import Order, OrderRequest  # noqa: E402
from swap_engine.domain.quote import Venue  # noqa: E402
from swap_engine.routing.providers import StaticQuoteProvider  # noqa: E402

# Import shared fixtures from api_fixtures
from tests.api_fixtures import *  # noqa: E402, F403


@pytest.fixture(scope="session")
def temp_data_dir() -> Generator[Path, None, None]:
    """Create a temporary data directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Drop cached settings so env changes in one test never leak."""
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """
    Settings for fast, deterministic tests.

    No simulated stage latency and millisecond backoff so the whole retry
    path runs in well under a second.
    """
    return Settings(
        data_dir=tmp_path,
        storage_backend=StorageBackend.MEMORY,
        queue_concurrency=4,
        queue_backoff_delay_ms=10,
        queue_lock_duration_ms=5000,
        queue_poll_interval_ms=10,
        shutdown_grace_s=1.0,
        pending_delay_ms=0,
        building_delay_ms=0,
        confirmation_delay_ms=0,
        confirmation_jitter_ms=0,
        quote_latency_ms=0,
        broadcast_send_timeout_s=1.0,
    )


@pytest.fixture
def venue_a() -> StaticQuoteProvider:
    """Venue A quoting 204.10."""
    return StaticQuoteProvider(Venue.RAYDIUM, price=204.10, fee=0.003)


@pytest.fixture
def venue_b() -> StaticQuoteProvider:
    """Venue B quoting 206.55."""
    return StaticQuoteProvider(Venue.METEORA, price=206.55, fee=0.002)


@pytest.fixture
def sample_request() -> OrderRequest:
    return OrderRequest(token_in="SOL", token_out="USDC", amount=10, slippage=0.05)


@pytest.fixture
def sample_order(sample_request: OrderRequest) -> Order:
    return sample_request.to_order()
