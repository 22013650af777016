# Keep this TINY so importing the package never drags in heavy deps.
from . import lib  # so: from modules.carrier_sync import lib
from .main import run  # so: from modules.carrier_sync import run

__all__ = ["lib", "run"]
