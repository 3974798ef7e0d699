import os
import tempfile

# The module-level store opens its database on import.
os.environ.setdefault("MARKETPLACE_DB_PATH", os.path.join(tempfile.mkdtemp(), "marketplace.sqlite3"))
