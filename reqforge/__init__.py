"""ReqForge AI: AI-assisted scaffolding for Postman collections."""

from .audit import flatten
from .locator import inject_test_script, locate
from .models import CollectionTree, FolderNode, RequestNode, parse_item
from .synchronizer import SyncReport, TreeSynchronizer, synchronize

__version__ = "1.0.0"
