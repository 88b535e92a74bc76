import io
import logging

import pytest

from backend.orchestrator.app import logging as logging_config


def _reset_root_logger(original_handlers):
    root = logging.getLogger()
    root.handlers = list(original_handlers)
    root.setLevel(logging.NOTSET)


@pytest.mark.parametrize("initial_handlers", [None, [logging.StreamHandler(io.StringIO())]])
def test_setup_logging_respects_existing_handlers(initial_handlers):
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    try:
        if initial_handlers is None:
            root.handlers = []
            expected_handlers = 1
        else:
            root.handlers = list(initial_handlers)
            expected_handlers = len(initial_handlers)

        logging_config.setup_logging(level="DEBUG")

        assert len(root.handlers) == expected_handlers
        assert root.level == logging.DEBUG
        for handler in root.handlers:
            if initial_handlers is None:
                assert handler.level in (logging.NOTSET, logging.DEBUG)
            else:
                assert handler.level == logging.DEBUG
    finally:
        _reset_root_logger(original_handlers)


def test_unknown_level_falls_back_to_info():
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    try:
        root.handlers = [logging.StreamHandler(io.StringIO())]
        logging_config.setup_logging(level="chatty")
        assert root.level == logging.INFO
    finally:
        _reset_root_logger(original_handlers)


@pytest.fixture
def restore_logging():
    yield
    logging_config.setup_logging()


def test_bound_context_is_merged_into_events(restore_logging, capsys):
    logging_config.setup_logging(level="INFO")
    logger = logging_config.get_logger("orchestrator.test")
    logging_config.bind_contextvars(run_id="run-1")
    try:
        logger.info("checkpoint_saved", index=3)
    finally:
        logging_config.clear_contextvars()

    output = capsys.readouterr().out
    assert '"run_id": "run-1"' in output
    assert '"event": "checkpoint_saved"' in output
    assert '"index": 3' in output
