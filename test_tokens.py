"""
Property-based tests for token string helpers.
Uses Hypothesis to check generation, masking and format checks across many inputs.
"""
import random
import string
from datetime import datetime, timedelta

import pytest
from hypothesis import given, settings, strategies as st

from utils.tokens import (
    ALPHANUMERIC,
    HEX_ALPHABET,
    TokenPolicy,
    days_until,
    generate,
    generate_secure_token,
    is_well_formed,
    mask_token,
    portal_url,
    qr_code_png,
)


# --- GENERATION ---

@settings(max_examples=100)
@given(length=st.integers(min_value=20, max_value=128), seed=st.integers(min_value=0, max_value=2**32))
def test_generated_token_length_and_alphabet(length, seed):
    rng = random.Random(seed)
    token = generate_secure_token(length, randbelow=rng.randrange)
    assert len(token) == length
    assert all(c in ALPHANUMERIC for c in token)


@settings(max_examples=50)
@given(length=st.integers(min_value=20, max_value=64))
def test_generated_token_uses_secure_source_by_default(length):
    token = generate(length)
    assert len(token) >= 20
    assert is_well_formed(token)


def test_batch_of_tokens_is_pairwise_distinct():
    batch = [generate() for _ in range(500)]
    assert len(set(batch)) == len(batch)


def test_high_security_policy_is_64_hex():
    token = generate(TokenPolicy.high_security())
    assert len(token) == 64
    assert set(token) <= set(HEX_ALPHABET)


@pytest.mark.parametrize("length", [0, 6, 19])
def test_short_lengths_rejected(length):
    with pytest.raises(ValueError):
        generate_secure_token(length)


def test_tiny_alphabet_rejected():
    with pytest.raises(ValueError):
        generate_secure_token(20, alphabet="ab")


# --- MASKING ---

def test_mask_shows_only_prefix_and_suffix():
    assert mask_token("ABC123DEF456GHI789") == "tok_ABC***789"


@pytest.mark.parametrize("value", ["", None])
def test_mask_empty(value):
    assert mask_token(value) == "tok_null"


@pytest.mark.parametrize("value", ["a", "abc", "ABCDEF"])
def test_mask_short_values_constant(value):
    assert mask_token(value) == "tok_***"


@given(value=st.text(alphabet=string.ascii_letters + string.digits, min_size=7, max_size=128))
def test_mask_never_reveals_full_value(value):
    masked = mask_token(value)
    assert value not in masked
    assert masked == f"tok_{value[:3]}***{value[-3:]}"


# --- FORMAT / EXPIRY / LINKS ---

@pytest.mark.parametrize("value,expected", [
    ("ABC123DEF456GHI789JKL", True),
    ("ABC123DEF456GHI789", False),  # 18 chars
    ("ABC123DEF456GHI789JK!", False),
    ("has spaces in the token value", False),
    ("a" * 129, False),
    (None, False),
])
def test_is_well_formed(value, expected):
    assert is_well_formed(value) is expected


def test_days_until_rounds_up():
    now = datetime(2026, 3, 2, 9, 0, 0)
    assert days_until(now + timedelta(days=6, hours=1), now) == 7
    assert days_until(now + timedelta(days=7), now) == 7
    assert days_until(None, now) is None


def test_portal_url_is_deterministic():
    assert portal_url("ABC123DEF456GHI789JKL", "https://photos.example.com/") == \
        "https://photos.example.com/f/ABC123DEF456GHI789JKL"
    assert portal_url("ABC123DEF456GHI789JKL").endswith("/f/ABC123DEF456GHI789JKL")


def test_qr_code_png_is_png():
    data = qr_code_png("ABC123DEF456GHI789JKL", "https://photos.example.com")
    assert data.startswith(b"\x89PNG\r\n\x1a\n")
