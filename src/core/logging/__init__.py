"""
Structured logging module.

Provides JSON logging with context propagation across await points.

Import directly from sub-modules:
    from core.logging.setup import get_logger, setup_logging
    from core.logging.utilities import log_with_context, LoggedClass
    from core.logging.context import set_log_context
"""
