import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--with-models",
        action="store_true",
        default=False,
        help="Also run tests that load real embedding models.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if config.getoption("--with-models"):
        return
    skip = pytest.mark.skip(reason="needs a downloaded embedding model (pass --with-models)")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
