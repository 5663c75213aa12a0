import logging
import sys
import os

class RunContextFilter(logging.Filter):
    """Injects session/tick context into log records for traceability."""

    def __init__(self):
        super().__init__()
        self.session_id = None
        self.tick_id = os.getenv("TICK_ID")

    def set_context(self, session_id=None, tick_id=None):
        if session_id is not None:
            self.session_id = session_id
        if tick_id is not None:
            self.tick_id = tick_id

    def filter(self, record):
        record.session_id = getattr(record, "session_id", None) or self.session_id or "-"
        record.tick_id = self.tick_id or "-"
        return True


_RUN_CONTEXT_FILTER = RunContextFilter()


def set_logging_context(session_id=None, tick_id=None):
    """Update the global logging context so records carry session/tick ids."""
    _RUN_CONTEXT_FILTER.set_context(session_id, tick_id)


def get_context_filter() -> RunContextFilter:
    return _RUN_CONTEXT_FILTER


def setup_logging(log_dir: str | None = None):
    """
    Configures the logging system.
    - bot.log: User-friendly log of tick outcomes and trades (via bot_actions logger)
    - console.log: Technical DEBUG level log
    - telemetry.log: Structured JSON per-tick telemetry for analysis
    - Terminal: INFO level
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers to avoid duplicates if called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    simple_formatter = logging.Formatter('%(asctime)s - %(message)s')
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - tick=%(tick_id)s session=%(session_id)s - %(message)s'
    )

    test_mode = (
        "PYTEST_RUNNING" in os.environ
        or "PYTEST_CURRENT_TEST" in os.environ
        or "pytest" in sys.modules
    )

    if log_dir is None:
        log_dir = "logs/test" if test_mode else "."
    os.makedirs(log_dir, exist_ok=True)

    # 1. Console Log (console*.log) - Technical debug log
    log_filename = "console_test.log" if test_mode else "console.log"
    console_handler = logging.FileHandler(os.path.join(log_dir, log_filename), mode='w', encoding='utf-8')
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(detailed_formatter)
    console_handler.addFilter(_RUN_CONTEXT_FILTER)
    logger.addHandler(console_handler)

    # 2. Real Terminal Output
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(logging.DEBUG if test_mode else logging.INFO)
    stream_handler.setFormatter(detailed_formatter)
    stream_handler.addFilter(_RUN_CONTEXT_FILTER)
    logger.addHandler(stream_handler)

    # 3. Bot Actions Log (bot.log) - User-friendly log
    bot_actions_logger = logging.getLogger('bot_actions')
    bot_actions_logger.setLevel(logging.INFO)
    bot_actions_logger.propagate = False

    bot_log_filename = "bot_test.log" if test_mode else "bot.log"
    bot_handler = logging.FileHandler(os.path.join(log_dir, bot_log_filename), mode='w', encoding='utf-8')
    bot_handler.setLevel(logging.INFO)
    bot_handler.setFormatter(simple_formatter)
    bot_handler.addFilter(_RUN_CONTEXT_FILTER)
    bot_actions_logger.addHandler(bot_handler)

    # 4. Telemetry Log (telemetry.log) - structured JSON per tick
    telemetry_logger = logging.getLogger('telemetry')
    telemetry_logger.setLevel(logging.INFO)
    telemetry_logger.propagate = False
    telemetry_log_filename = "telemetry_test.log" if test_mode else "telemetry.log"
    telemetry_handler = logging.FileHandler(os.path.join(log_dir, telemetry_log_filename), mode='w', encoding='utf-8')
    telemetry_handler.setLevel(logging.INFO)
    telemetry_handler.setFormatter(logging.Formatter('%(message)s'))
    telemetry_handler.addFilter(_RUN_CONTEXT_FILTER)
    telemetry_logger.addHandler(telemetry_handler)

    logging.info("Logging initialized.")

    return bot_actions_logger
