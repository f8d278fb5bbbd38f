"""
pytest configuration and fixtures for format schema tests.

Provides reusable fixtures for:
- The bundled save-record schemas (skip and advance-on-absent revisions)
- Codecs built from them
- Hypothesis property-based testing configuration
"""

import pytest
import sys
from pathlib import Path

# Add project paths
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR / "tools"))

SCHEMA_DIR = ROOT_DIR / "schemas"

# Configure Hypothesis profiles
try:
    from hypothesis import settings, Verbosity, Phase

    # Default profile: balanced speed and coverage
    settings.register_profile(
        "default",
        max_examples=100,
        deadline=None,  # Disable deadline for slow interpreters
    )

    # CI profile: more thorough testing
    settings.register_profile(
        "ci",
        max_examples=500,
        deadline=None,
        suppress_health_check=[],
        phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    )

    # Dev profile: fast iteration
    settings.register_profile(
        "dev",
        max_examples=10,
        deadline=None,
    )

    # Debug profile: verbose output
    settings.register_profile(
        "debug",
        max_examples=10,
        verbosity=Verbosity.verbose,
        deadline=None,
    )

    # Load profile from environment
    import os
    profile = os.environ.get("HYPOTHESIS_PROFILE", "default")
    settings.load_profile(profile)

except ImportError:
    pass  # Hypothesis not installed


@pytest.fixture(scope="session")
def save_schema_path():
    return SCHEMA_DIR / "save.yaml"


@pytest.fixture(scope="session")
def save_fixed_schema_path():
    return SCHEMA_DIR / "save_fixed.yaml"


@pytest.fixture(scope="session")
def save_codec(save_schema_path):
    """Interpreter for the canonical (skip policy) save format."""
    from format_codec import FormatCodec
    return FormatCodec.from_file(save_schema_path)


@pytest.fixture(scope="session")
def save_fixed_codec(save_fixed_schema_path):
    """Interpreter for the fixed-offset (advance_if_false) save format."""
    from format_codec import FormatCodec
    return FormatCodec.from_file(save_fixed_schema_path)


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
