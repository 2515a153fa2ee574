from __future__ import annotations

import sys
from unittest.mock import MagicMock

alsaaudio = MagicMock()
alsaaudio.ALSAAudioError = type("ALSAAudioError", (Exception,), {})
sys.modules["alsaaudio"] = alsaaudio
sys.modules["openwakeword"] = MagicMock()
