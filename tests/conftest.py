"""
Root conftest for all tests.

This conftest only contains minimal shared configuration.
- Unit tests (tests/unit/) use their own minimal conftest
- tests/unit/lsp/ adds an in-memory language server and fake processes
- tests/fixtures/ holds the stub language server started by end-to-end tests
"""


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (no external dependencies)"
    )
