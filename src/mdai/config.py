# mdai: Environment-driven configuration constants. Per-project overrides live in .mdai/settings.yaml (see settings.py).

import os

# Command used to open the conversation file; the file path is appended.
MDAI_EDITOR = os.environ.get("MDAI_EDITOR") or os.environ.get("EDITOR") or "vi +99999"

# Write tool fences Brotli-compressed by default
MDAI_COMPRESSION = os.environ.get("MDAI_COMPRESSION", "1").strip().lower() not in ("0", "false", "no", "off")

# Comma-separated tool names exposed to the model (empty = all registered tools)
MDAI_TOOLS = [t.strip() for t in os.environ.get("MDAI_TOOLS", "").split(",") if t.strip()]

# Thread pool size for read_files
MDAI_READ_WORKERS = int(os.environ.get("MDAI_READ_WORKERS", "8") or "8")

# Model id handed to the model client
MDAI_MODEL = os.environ.get("MDAI_MODEL", "")
