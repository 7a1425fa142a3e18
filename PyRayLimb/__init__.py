"""Core library imports for PyRayLimb."""

# Define a logger object to allow easier log handling
import logging
logging.raiseExceptions = False
logger = logging.getLogger('PyRayLimb_logger')

from importlib import metadata

# Import the package modules and top-level classes
from PyRayLimb import library  # noqa F401

# Set version
__version__ = metadata.version('PyRayLimb')
