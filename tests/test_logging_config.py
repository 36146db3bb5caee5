import json
import logging

import pytest

from foliocas.logging_config import setup_logging


@pytest.fixture
def foliocas_logger():
    logger = logging.getLogger("foliocas")
    yield logger
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.setLevel(logging.NOTSET)


def test_records_are_json(foliocas_logger, capsys):
    # the handler binds sys.stdout, which capsys only swaps in for the test body
    setup_logging(logging.DEBUG)

    logging.getLogger("foliocas.engine").info("alice: %s", "Added file: a.txt")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["message"] == "alice: Added file: a.txt"
    assert record["level"] == "INFO"
    assert record["logger"] == "foliocas.engine"
    assert "timestamp" in record


def test_debug_records_follow_the_level(foliocas_logger, capsys):
    setup_logging(logging.INFO)

    logging.getLogger("foliocas.state").debug("hidden")
    logging.getLogger("foliocas.state").warning("shown")

    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["shown"]


def test_setup_replaces_previous_handler(foliocas_logger):
    setup_logging(logging.DEBUG)
    second = setup_logging()

    assert foliocas_logger.handlers == [second]
    assert logging.getLogger("anyio").level == logging.WARNING
