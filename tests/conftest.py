"""Pytest configuration shared by API and unit tests."""

import os
import sys
from pathlib import Path

_BACKEND_ROOT = Path(__file__).resolve().parents[1] / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# Disable session authentication by default so API tests can call endpoints without
# provisioning cookies. Individual tests can override this via monkeypatch when needed.
os.environ.setdefault("DISABLE_SESSION_AUTH", "true")
# 32 文字以上の固定シークレット（起動時バリデーション用）。実運用では `.env` で乱数値を設定する。
os.environ.setdefault("SESSION_SECRET_KEY", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")
# strict_mode では SRS_POLICY と OPENAI_API_KEY が必須になるため、テストは非 strict で日単位に固定する。
os.environ.setdefault("STRICT_MODE", "false")
os.environ.setdefault("SRS_POLICY", "day")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("FIRESTORE_EMULATOR_HOST", "localhost:8080")
os.environ.setdefault("FIRESTORE_PROJECT_ID", "test-project")
