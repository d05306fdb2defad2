"""Pytest configuration and fixtures shared by the vectorsearch tests."""
import pytest

from tests.fakes import count_words


@pytest.fixture(autouse=True)
def regex_sentences(monkeypatch):
    """Use the regex sentence splitter so tests never download punkt."""
    monkeypatch.setattr("vectorsearch.chunking.chunker._punkt_ready", False)


@pytest.fixture
def counter():
    """Word-count token counter for deterministic budgets."""
    return count_words
