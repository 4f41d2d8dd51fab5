"""Property-based tests for configuration module using Hypothesis.

To run: pytest tests/test_config_properties.py -v
"""
from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from hypothesis import given, strategies as st

from tmd_catalog.config import CATALOG_DB_ENV, CATALOG_RETRIES_ENV, get_catalog_settings


# ==============================================================================
# Hypothesis Strategies
# ==============================================================================

# Strategy for valid absolute paths
valid_absolute_paths = st.one_of(
    st.just("/tmp/catalog.db"),
    st.just("/var/lib/tmd/catalog.db"),
    st.builds(
        lambda x: f"/tmp/{x}.db",
        st.text(alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd")), min_size=1, max_size=20)
    )
)

positive_attempts = st.integers(min_value=1, max_value=50)


# ==============================================================================
# Property-Based Tests for get_catalog_settings()
# ==============================================================================

@pytest.mark.property
@given(path=valid_absolute_paths, attempts=positive_attempts)
def test_catalog_settings_preserve_input_values(path, attempts):
    """Property: Output matches input for valid values."""
    with patch.dict(
        os.environ,
        {CATALOG_DB_ENV: path, CATALOG_RETRIES_ENV: str(attempts)},
        clear=True,
    ):
        settings = get_catalog_settings()

        assert settings.path.is_absolute()
        assert settings.path == Path(path).resolve()
        assert settings.max_attempts == attempts


@pytest.mark.property
@given(attempts=st.integers(min_value=-1000, max_value=0))
def test_non_positive_attempts_always_rejected(attempts):
    with patch.dict(os.environ, {CATALOG_RETRIES_ENV: str(attempts)}, clear=True):
        with pytest.raises(RuntimeError):
            get_catalog_settings()


@pytest.mark.property
@given(invalid=st.text(
    alphabet=st.characters(
        blacklist_characters="0123456789-+_",
        blacklist_categories=("Cc", "Cs", "Zs", "Nd"),
    ),
    min_size=1,
    max_size=20,
))
def test_non_numeric_attempts_always_rejected(invalid):
    with patch.dict(os.environ, {CATALOG_RETRIES_ENV: invalid}, clear=True):
        with pytest.raises(RuntimeError, match="must be an integer"):
            get_catalog_settings()
