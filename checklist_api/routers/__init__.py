"""API routers."""

from . import files
from . import health
from . import payments
from . import portal

__all__ = ['files', 'health', 'payments', 'portal']
