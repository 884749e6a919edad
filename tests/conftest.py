"""Shared fixtures: in-memory invoice store and watermark."""
import pytest

from fakes import FakeInvoiceStore, FakeWatermarkStore


@pytest.fixture
def store() -> FakeInvoiceStore:
    return FakeInvoiceStore()


@pytest.fixture
def watermark() -> FakeWatermarkStore:
    return FakeWatermarkStore()
