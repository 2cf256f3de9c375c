import logging
from typing import Optional


DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: Optional[int] = None, fmt: Optional[str] = None, force: bool = False) -> None:
	"""Configure root logging once. Subsequent calls only adjust the level, if one is given.
	If fmt is not provided, a sensible default is used.
	"""
	root = logging.getLogger()
	if root.handlers and not force:
		# Already configured; do not add another handler
		if level is not None:
			root.setLevel(level)
		return
	logging.basicConfig(level=logging.INFO if level is None else level, format=fmt or DEFAULT_FORMAT, force=force)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	"""Return a module/logger by name, after ensuring logging is configured."""
	setup_logging()
	return logging.getLogger(name) if name else logging.getLogger("docker_gc")


def log_exception(logger: logging.Logger, message: str, error: Optional[BaseException] = None) -> None:
	"""Log an error together with the traceback of `error`, or of the exception being handled.

	Used where a background thread must survive an unexpected failure.
	"""
	if error is not None:
		message = f"{message}: {type(error).__name__}: {error}"
	logger.error(message, exc_info=error if error is not None else True)
