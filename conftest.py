# Ensure the package under airflow/plugins/ is importable during tests without installing it.
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent
PLUGINS = ROOT / "airflow" / "plugins"
if PLUGINS.exists():
    sys.path.insert(0, str(PLUGINS))
