from flask import Blueprint

bp = Blueprint("billing", __name__)

# Importing is what registers the routes
from . import routes  # noqa: E402,F401
