# codeshop/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from codeshop.models.user import User  # noqa: F401
from codeshop.models.code import Code  # noqa: F401
from codeshop.models.transaction import Transaction  # noqa: F401
