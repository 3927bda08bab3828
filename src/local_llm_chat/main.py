"""local_llm_chat.main

Entry-point wiring.

Run:
    python -m local_llm_chat.main
or, once installed:
    local-llm-chat

Environment (see `local_llm_chat.config`): LLM_ENDPOINT, LLM_BASE_URL,
LLM_MODEL, SD_BASE_URL, SD_MODEL, LOCAL_LLM_CHAT_LOG_DIR.
"""

from __future__ import annotations

from .bridge import TaskBridge
from .chat_ui import ChatWindow
from .config import load_config
from .transport import Transport


def main() -> None:
    cfg = load_config()

    # One HTTP client shared by chat and images; one daemon thread per request.
    bridge = TaskBridge()
    transport = Transport()

    ui = ChatWindow(cfg=cfg, transport=transport, bridge=bridge)
    raise SystemExit(ui.exec())


if __name__ == "__main__":
    main()
