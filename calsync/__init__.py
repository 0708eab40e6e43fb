"""
Main package initialization.
Sets up logging for the calendar sync core.
"""
from calsync.core.logging import setup_logging

# Initialize logging at package level
logger = setup_logging()
logger.debug("Initializing calsync")
