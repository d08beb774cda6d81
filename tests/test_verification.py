# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Verification code store tests."""

import asyncio

import pytest

from novella_server.exceptions import DeliveryFailed, ValidationError
from novella_server.services.verification import (
    CodeExhausted,
    CodeExpired,
    CodeInvalid,
    CodeNotFound,
    VerificationCodeStore,
)

EMAIL = "reader@example.com"


@pytest.fixture
def fixed_codes(codes):
    """Store whose generated codes are predictable."""
    sequence = iter(["123456", "654321", "111111", "222222"])
    codes._generate = lambda: next(sequence)
    return codes


async def test_issue_returns_numeric_code(codes):
    code = await codes.issue(EMAIL)
    assert len(code) == 6
    assert code.isdigit()
    assert EMAIL in codes


async def test_code_is_single_use(codes):
    code = await codes.issue(EMAIL)
    await codes.verify(EMAIL, code)
    with pytest.raises(CodeNotFound):
        await codes.verify(EMAIL, code)


async def test_second_issue_invalidates_first(fixed_codes):
    first = await fixed_codes.issue(EMAIL)
    second = await fixed_codes.issue(EMAIL)
    with pytest.raises(CodeInvalid):
        await fixed_codes.verify(EMAIL, first)
    await fixed_codes.verify(EMAIL, second)


async def test_attempts_are_capped(fixed_codes):
    code = await fixed_codes.issue(EMAIL)
    for remaining in (4, 3, 2, 1):
        with pytest.raises(CodeInvalid) as exc_info:
            await fixed_codes.verify(EMAIL, "000000")
        assert exc_info.value.attempts_remaining == remaining
    with pytest.raises(CodeExhausted):
        await fixed_codes.verify(EMAIL, "000000")
    # The correct code no longer helps once attempts are used up
    with pytest.raises(CodeExhausted):
        await fixed_codes.verify(EMAIL, code)
    with pytest.raises(CodeNotFound):
        await fixed_codes.verify(EMAIL, code)


async def test_new_issue_clears_exhaustion(fixed_codes):
    await fixed_codes.issue(EMAIL)
    for _ in range(5):
        with pytest.raises(ValidationError):
            await fixed_codes.verify(EMAIL, "000000")
    code = await fixed_codes.issue(EMAIL)
    await fixed_codes.verify(EMAIL, code)


async def test_exhaustion_lapses_with_the_code(fixed_codes, clock):
    await fixed_codes.issue(EMAIL)
    for _ in range(5):
        with pytest.raises(ValidationError):
            await fixed_codes.verify(EMAIL, "000000")
    clock.advance(601)
    with pytest.raises(CodeNotFound):
        await fixed_codes.verify(EMAIL, "123456")


async def test_expired_code_reports_expired(codes, clock):
    code = await codes.issue(EMAIL)
    clock.advance(601)
    with pytest.raises(CodeExpired):
        await codes.verify(EMAIL, "not-the-code")
    with pytest.raises(CodeNotFound):
        await codes.verify(EMAIL, code)


async def test_code_valid_until_expiry(codes, clock):
    code = await codes.issue(EMAIL)
    clock.advance(600)
    await codes.verify(EMAIL, code)


async def test_surrounding_whitespace_is_trimmed(fixed_codes):
    await fixed_codes.issue(EMAIL)
    with pytest.raises(CodeInvalid):
        await fixed_codes.verify(EMAIL, "123 456")
    await fixed_codes.verify(EMAIL, " 123456\n")


async def test_codes_are_per_email(fixed_codes):
    await fixed_codes.issue(EMAIL)
    with pytest.raises(CodeNotFound):
        await fixed_codes.verify("other@example.com", "123456")
    with pytest.raises(CodeNotFound):
        await fixed_codes.verify(EMAIL.upper(), "123456")


async def test_delivery_failure_rolls_back(codes):
    async def broken(email: str, code: str) -> None:
        raise ConnectionError("smtp down")

    with pytest.raises(DeliveryFailed):
        await codes.issue(EMAIL, deliver=broken)
    assert EMAIL not in codes

    delivered = {}

    async def working(email: str, code: str) -> None:
        delivered[email] = code

    code = await codes.issue(EMAIL, deliver=working)
    assert delivered == {EMAIL: code}


async def test_purge_expired(codes, clock):
    await codes.issue("a@example.com")
    clock.advance(300)
    await codes.issue("b@example.com")
    clock.advance(301)
    assert codes.purge_expired() == 1
    assert "a@example.com" not in codes
    assert "b@example.com" in codes


async def test_concurrent_wrong_guesses_cannot_exceed_attempts(fixed_codes):
    await fixed_codes.issue(EMAIL)
    results = await asyncio.gather(
        *(fixed_codes.verify(EMAIL, "000000") for _ in range(10)),
        return_exceptions=True,
    )
    kinds = [type(r) for r in results]
    assert kinds.count(CodeInvalid) == 4
    assert kinds.count(CodeExhausted) == 2
    assert kinds.count(CodeNotFound) == 4


async def test_concurrent_correct_code_consumed_once(fixed_codes):
    code = await fixed_codes.issue(EMAIL)
    results = await asyncio.gather(
        *(fixed_codes.verify(EMAIL, code) for _ in range(5)),
        return_exceptions=True,
    )
    assert results.count(None) == 1
    assert sum(isinstance(r, CodeNotFound) for r in results) == 4


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        VerificationCodeStore(max_attempts=0)
