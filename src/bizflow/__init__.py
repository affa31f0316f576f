# BizFlow assistant package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("BIZFLOW_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("bizflow")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[BIZFLOW][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    llm_level_name = (os.getenv("BIZFLOW_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("bizflow.relay").setLevel(llm_level)


_configure_logging()
