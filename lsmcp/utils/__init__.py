from lsmcp.utils.logger import configure_logging, log_context, setup_logger

__all__ = ["configure_logging", "log_context", "setup_logger"]
