import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from agent_runtime.persistence import SessionStore


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class WorkspaceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._workspace = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._workspace.mkdir(parents=True, exist_ok=True)
        self._store = SessionStore(self._workspace)

    def tearDown(self) -> None:
        shutil.rmtree(self._workspace, ignore_errors=True)
