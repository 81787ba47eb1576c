"""
Minimal conftest for unit tests.

Unit tests exercise individual classes in isolation. Language servers are
replaced by the in-memory fakes in tests/unit/lsp/, or by the stdlib-only stub
server in tests/fixtures/ where a real subprocess is needed.
"""

import sys
from pathlib import Path

# Add project root to path for imports (idempotent)
project_root = Path(__file__).parent.parent.parent.resolve()
project_root_str = str(project_root)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)
