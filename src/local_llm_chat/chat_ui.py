"""local_llm_chat.chat_ui

PySide6 window for chatting with a local LLM and generating images.

Run:
    python -m local_llm_chat.main

Threading:
- UI runs on the main thread (Qt event loop).
- A QTimer fires every frame (~16 ms) and calls `tick()` on both sessions.
  Sessions poll the task bridge and never block; network I/O happens on the
  bridge's worker threads.
"""

from __future__ import annotations

import html
import logging
import re
import sys
from pathlib import Path
from typing import Optional

from PySide6 import QtCore, QtGui, QtWidgets

from .bridge import TaskBridge
from .chat_session import ChatSession, ChatStatus, Message
from .config import CHAT_KINDS, DEFAULT_LLM_MODEL, AppConfig, load_config
from .endpoints import ChatOptions, EndpointKind, GenerationParams, HiresFix
from .generation import GenerationSession, JobStatus
from .transport import Transport


_LOG = logging.getLogger("local_llm_chat")
_LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_THINK_CAPTURE_RE = re.compile(r"(?is)<think>(.*?)(?:</think>|$)")


def setup_logging(log_dir: Path, *, filename: str = "local_llm_chat.log") -> Path:
    """Send the package's log records to stderr and to `log_dir/filename`.

    The file is truncated on every start. Calling this again (a second
    window in the same process) keeps the handlers already installed.
    """

    log_path = (log_dir / filename).resolve()
    if any(getattr(h, "_local_llm_chat", False) for h in _LOG.handlers):
        return log_path

    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_LOG_DATEFMT)
    handlers: list[logging.Handler] = [
        logging.FileHandler(str(log_path), mode="w", encoding="utf-8"),
        logging.StreamHandler(stream=sys.stderr),
    ]
    for h in handlers:
        h.setFormatter(formatter)
        h._local_llm_chat = True  # type: ignore[attr-defined]
        _LOG.addHandler(h)
    _LOG.setLevel(logging.INFO)
    _LOG.propagate = False

    _LOG.info("app_start log_path=%s", log_path)
    return log_path


def _esc(s: str) -> str:
    return html.escape(s or "", quote=True)


def _esc_lines(s: str) -> str:
    return _esc(s).replace("\n", "<br/>")


_THINK_BLOCK = (
    "<div style='background:#2f2d38; color:#c8c8c8; padding:6px;'>"
    "<b style='color:#a78bfa'>Thinking...</b><br/>{body}</div>"
)


def _render_html_with_think(text: str) -> str:
    """Escape a message for the transcript; `<think>` sections become a muted block.

    An unterminated `<think>` (reply still streaming) runs to the end of the text.
    """

    chunks: list[str] = []
    pos = 0
    for match in _THINK_CAPTURE_RE.finditer(text or ""):
        chunks.append(_esc_lines(text[pos : match.start()]))
        reasoning = (match.group(1) or "").strip()
        if reasoning:
            chunks.append(_THINK_BLOCK.format(body=_esc_lines(reasoning)))
        pos = match.end()
    chunks.append(_esc_lines((text or "")[pos:]))
    return "".join(chunks)


def render_transcript(conversation: tuple[Message, ...], status: ChatStatus, error: str) -> str:
    parts: list[str] = []
    for m in conversation:
        who = "You" if m.role == "user" else ("System" if m.role == "system" else "LLM")
        parts.append(f"<p><b>{who}:</b><br/>{_render_html_with_think(m.content)}</p>")
    if status is ChatStatus.SENDING:
        parts.append("<p><i>Waiting for the server…</i></p>")
    if status is ChatStatus.ERROR and error:
        parts.append(f"<p style='color:#e5484d'><b>Error:</b> {_esc(error)}</p>")
    return "".join(parts)


class ChatWindow(QtWidgets.QMainWindow):
    def __init__(
        self,
        *,
        cfg: Optional[AppConfig] = None,
        transport: Optional[Transport] = None,
        bridge: Optional[TaskBridge] = None,
    ) -> None:
        # Ensure a QApplication exists *before* constructing any QWidget.
        self._app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
        super().__init__()

        self._cfg = cfg or load_config()
        self._log_path = setup_logging(self._cfg.log_dir)
        self._bridge = bridge or TaskBridge()
        self._transport = transport or Transport()

        self._chat = ChatSession(
            bridge=self._bridge,
            transport=self._transport,
            endpoint=self._cfg.chat,
            options=ChatOptions(temperature=self._cfg.temperature),
            system_prompt=self._cfg.system_prompt,
        )
        self._images = GenerationSession(
            bridge=self._bridge,
            transport=self._transport,
            endpoint=self._cfg.image,
            progress_interval_s=self._cfg.progress_interval_s,
        )
        self._last_image: bytes | None = None

        self.setWindowTitle("LLM Chat")
        self.resize(900, 700)
        self._build_ui()

        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(int(self._cfg.frame_interval_ms))
        self._timer.timeout.connect(self._tick)
        self._timer.start()

    def exec(self) -> int:
        self.show()
        return int(self._app.exec())

    # ---- UI ----

    def _build_ui(self) -> None:
        tabs = QtWidgets.QTabWidget()
        tabs.addTab(self._build_chat_tab(), "Chat")
        tabs.addTab(self._build_image_tab(), "Image")
        tabs.addTab(self._build_settings_tab(), "Settings")
        self.setCentralWidget(tabs)

    def _build_chat_tab(self) -> QtWidgets.QWidget:
        w = QtWidgets.QWidget()
        lay = QtWidgets.QVBoxLayout(w)

        self._transcript = QtWidgets.QTextBrowser()
        self._transcript.setOpenExternalLinks(True)
        lay.addWidget(self._transcript, 1)

        self._input = QtWidgets.QPlainTextEdit()
        self._input.setPlaceholderText("Type your message here... (Ctrl+Enter to send)")
        self._input.setFixedHeight(90)
        lay.addWidget(self._input)

        row = QtWidgets.QHBoxLayout()
        self._chat_status = QtWidgets.QLabel("Idle")
        row.addWidget(self._chat_status, 1)
        btn_new = QtWidgets.QPushButton("New Chat")
        btn_new.clicked.connect(self._on_new_chat)
        row.addWidget(btn_new)
        self._btn_send = QtWidgets.QPushButton("Send")
        self._btn_send.clicked.connect(self._on_send)
        row.addWidget(self._btn_send)
        lay.addLayout(row)

        self._send_shortcut = QtGui.QShortcut(QtGui.QKeySequence("Ctrl+Return"), self._input)
        self._send_shortcut.activated.connect(self._on_send)
        return w

    def _build_image_tab(self) -> QtWidgets.QWidget:
        w = QtWidgets.QWidget()
        lay = QtWidgets.QHBoxLayout(w)

        form_box = QtWidgets.QWidget()
        form = QtWidgets.QFormLayout(form_box)
        self._prompt = QtWidgets.QPlainTextEdit()
        self._prompt.setFixedHeight(80)
        self._negative = QtWidgets.QLineEdit()
        self._steps = QtWidgets.QSpinBox()
        self._steps.setRange(1, 150)
        self._steps.setValue(20)
        self._cfg_scale = QtWidgets.QDoubleSpinBox()
        self._cfg_scale.setRange(1.0, 30.0)
        self._cfg_scale.setSingleStep(0.5)
        self._cfg_scale.setValue(7.0)
        self._width = QtWidgets.QSpinBox()
        self._height = QtWidgets.QSpinBox()
        for sb in (self._width, self._height):
            sb.setRange(64, 2048)
            sb.setSingleStep(64)
            sb.setValue(512)
        self._sampler = QtWidgets.QComboBox()
        self._sampler.setEditable(True)
        self._sampler.addItem("Euler a")
        self._scheduler = QtWidgets.QComboBox()
        self._scheduler.addItem("")
        self._sd_model = QtWidgets.QComboBox()
        self._sd_model.addItem("")
        self._sd_model.activated.connect(self._on_sd_model_chosen)
        self._lora = QtWidgets.QComboBox()
        self._lora.addItem("")
        self._lora_weight = QtWidgets.QDoubleSpinBox()
        self._lora_weight.setRange(0.0, 2.0)
        self._lora_weight.setSingleStep(0.05)
        self._lora_weight.setValue(1.0)
        self._hires = QtWidgets.QCheckBox("Hires. fix")

        form.addRow("Prompt", self._prompt)
        form.addRow("Negative", self._negative)
        form.addRow("Steps", self._steps)
        form.addRow("CFG scale", self._cfg_scale)
        form.addRow("Width", self._width)
        form.addRow("Height", self._height)
        form.addRow("Sampler", self._sampler)
        form.addRow("Scheduler", self._scheduler)
        form.addRow("Model", self._sd_model)
        form.addRow("LoRA", self._lora)
        form.addRow("LoRA weight", self._lora_weight)
        form.addRow(self._hires)

        btns = QtWidgets.QHBoxLayout()
        btn_catalog = QtWidgets.QPushButton("Refresh lists")
        btn_catalog.clicked.connect(self._images.refresh_catalog)
        btns.addWidget(btn_catalog)
        self._btn_generate = QtWidgets.QPushButton("Generate")
        self._btn_generate.clicked.connect(self._on_generate)
        btns.addWidget(self._btn_generate)
        form.addRow(btns)
        lay.addWidget(form_box)

        right = QtWidgets.QVBoxLayout()
        self._image_label = QtWidgets.QLabel("No image yet")
        self._image_label.setAlignment(QtCore.Qt.AlignmentFlag.AlignCenter)
        self._image_label.setMinimumSize(384, 384)
        right.addWidget(self._image_label, 1)
        self._progress = QtWidgets.QProgressBar()
        self._progress.setRange(0, 100)
        right.addWidget(self._progress)
        self._image_status = QtWidgets.QLabel("Idle")
        self._image_status.setWordWrap(True)
        right.addWidget(self._image_status)
        self._btn_save = QtWidgets.QPushButton("Save image…")
        self._btn_save.setEnabled(False)
        self._btn_save.clicked.connect(self._on_save_image)
        right.addWidget(self._btn_save)
        lay.addLayout(right, 1)
        return w

    def _build_settings_tab(self) -> QtWidgets.QWidget:
        w = QtWidgets.QWidget()
        form = QtWidgets.QFormLayout(w)

        self._kind = QtWidgets.QComboBox()
        for kind in CHAT_KINDS:
            self._kind.addItem(kind.label, kind.value)
        self._kind.setCurrentIndex(max(0, self._kind.findData(self._chat.endpoint.kind.value)))
        self._kind.currentIndexChanged.connect(self._on_kind_changed)
        form.addRow("Endpoint type", self._kind)

        self._chat_url = QtWidgets.QLineEdit(self._chat.endpoint.base_url)
        form.addRow("LLM base URL", self._chat_url)

        model_row = QtWidgets.QHBoxLayout()
        self._model = QtWidgets.QComboBox()
        self._model.setEditable(True)
        self._model.addItem(self._chat.endpoint.selected_model)
        model_row.addWidget(self._model, 1)
        btn_models = QtWidgets.QPushButton("⟳")
        btn_models.setToolTip("Refresh model list")
        btn_models.clicked.connect(self._on_refresh_models)
        model_row.addWidget(btn_models)
        form.addRow("Model", model_row)

        self._sd_url = QtWidgets.QLineEdit(self._images.endpoint.base_url)
        form.addRow("Stable Diffusion URL", self._sd_url)

        btn_apply = QtWidgets.QPushButton("Apply")
        btn_apply.clicked.connect(self._on_apply_settings)
        form.addRow(btn_apply)

        self._settings_error = QtWidgets.QLabel("")
        self._settings_error.setStyleSheet("color:#e5484d")
        self._settings_error.setWordWrap(True)
        form.addRow(self._settings_error)
        return w

    # ---- Actions ----

    def _on_send(self) -> None:
        text = self._input.toPlainText().strip()
        if not text:
            return
        self._apply_settings_if_idle()
        self._input.clear()
        self._chat.send(text)
        self._render_chat()

    def _on_new_chat(self) -> None:
        self._chat.clear()
        self._render_chat()

    def _on_generate(self) -> None:
        prompt = self._prompt.toPlainText().strip()
        if not prompt:
            self._image_status.setText("Enter a prompt first.")
            return
        self._apply_settings_if_idle()
        params = GenerationParams(
            prompt=prompt,
            negative_prompt=self._negative.text(),
            steps=self._steps.value(),
            cfg_scale=self._cfg_scale.value(),
            width=self._width.value(),
            height=self._height.value(),
            sampler_name=self._sampler.currentText().strip() or "Euler a",
            scheduler=self._scheduler.currentText().strip(),
            model=self._sd_model.currentText().strip(),
            lora=self._lora.currentText().strip(),
            lora_weight=self._lora_weight.value(),
            hires=HiresFix() if self._hires.isChecked() else None,
        )
        self._images.submit(params)
        self._render_image()

    def _on_save_image(self) -> None:
        if not self._last_image:
            return
        path, _ = QtWidgets.QFileDialog.getSaveFileName(self, "Save image", "image.png", "PNG (*.png);;All (*.*)")
        if not path:
            return
        try:
            Path(path).write_bytes(self._last_image)
            _LOG.info("image_saved path=%s bytes=%d", path, len(self._last_image))
        except OSError as e:
            self._image_status.setText(f"Failed to save image: {e}")

    def _on_sd_model_chosen(self) -> None:
        if self._images.switch_model(self._sd_model.currentText()) is not None:
            self._image_status.setText("Loading model…")

    def _on_kind_changed(self) -> None:
        kind = EndpointKind(self._kind.currentData())
        self._chat_url.setText(kind.default_base_url)
        self._model.clear()
        self._model.addItem(DEFAULT_LLM_MODEL)
        self._chat.available_models = []

    def _on_refresh_models(self) -> None:
        self._apply_settings_if_idle()
        self._chat.refresh_models()
        self._settings_error.setText("Loading models…")

    def _on_apply_settings(self) -> None:
        if not self._apply_settings_if_idle():
            self._settings_error.setText("Settings are applied once the current request finishes.")

    def _apply_settings_if_idle(self) -> bool:
        """Settings change only between requests; in-flight tasks keep their snapshot."""

        applied = True
        if not self._chat.busy:
            kind = EndpointKind(self._kind.currentData())
            current = self._chat.endpoint
            # A model name belongs to one backend.
            fallback = current.selected_model if kind is current.kind else DEFAULT_LLM_MODEL
            self._chat.endpoint = current.with_changes(
                kind=kind,
                base_url=self._chat_url.text().strip() or kind.default_base_url,
                selected_model=self._model.currentText().strip() or fallback,
            )
        else:
            applied = False
        if not self._images.busy:
            url = self._sd_url.text().strip() or EndpointKind.STABLE_DIFFUSION.default_base_url
            self._images.endpoint = self._images.endpoint.with_changes(base_url=url)
        else:
            applied = False
        return applied

    # ---- Frame tick ----

    def _tick(self) -> None:
        if self._chat.tick():
            self._render_chat()
            self._render_models()
        if self._images.tick():
            self._render_image()
            self._render_catalog()

    def _render_chat(self) -> None:
        st = self._chat.state
        self._transcript.setHtml(render_transcript(self._chat.conversation, st.status, st.error))
        bar = self._transcript.verticalScrollBar()
        bar.setValue(bar.maximum())
        self._chat_status.setText(st.status.value.capitalize())

    def _render_models(self) -> None:
        if self._chat.models_loading:
            return
        if self._chat.models_error:
            self._settings_error.setText(self._chat.models_error)
            return
        self._settings_error.setText("")
        if not self._chat.available_models:
            return
        self._model.blockSignals(True)
        try:
            self._model.clear()
            self._model.addItems(self._chat.available_models)
            idx = self._model.findText(self._chat.endpoint.selected_model)
            self._model.setCurrentIndex(max(0, idx))
        finally:
            self._model.blockSignals(False)

    def _render_image(self) -> None:
        job = self._images.job
        if job is None:
            return
        self._progress.setValue(int(job.percent))
        if job.status is JobStatus.QUEUED:
            self._image_status.setText("Queued…")
        elif job.status is JobStatus.RUNNING:
            self._image_status.setText(f"Generating… {job.percent:.0f}%")
        elif job.status is JobStatus.DONE:
            self._image_status.setText("Done")
        elif job.status is JobStatus.ERROR:
            self._image_status.setText(f"Error: {job.error}")

        data = job.image.data if job.image is not None else job.preview
        if data and data is not self._last_image:
            pix = QtGui.QPixmap()
            if pix.loadFromData(data):
                self._image_label.setPixmap(
                    pix.scaled(
                        self._image_label.size(),
                        QtCore.Qt.AspectRatioMode.KeepAspectRatio,
                        QtCore.Qt.TransformationMode.SmoothTransformation,
                    )
                )
        if job.image is not None:
            self._last_image = job.image.data
        self._btn_save.setEnabled(job.image is not None)
        self._btn_generate.setText("Generate" if job.status.is_terminal else "Restart")

    def _render_catalog(self) -> None:
        if self._images.catalog_error or self._images.model_error:
            self._image_status.setText(self._images.catalog_error or self._images.model_error)
            return
        if not self._images.model_switching and self._image_status.text() == "Loading model…":
            self._image_status.setText(f"Model: {self._images.endpoint.selected_model}")
        cat = self._images.catalog

        def refill(box: QtWidgets.QComboBox, items: list[str], *, blank: bool) -> None:
            if not items:
                return
            current = box.currentText()
            box.clear()
            if blank:
                box.addItem("")
            box.addItems(items)
            box.setCurrentIndex(max(0, box.findText(current)))

        refill(self._sd_model, [m.title for m in cat.models], blank=True)
        refill(self._lora, [lo.name for lo in cat.loras], blank=True)
        refill(self._sampler, cat.samplers, blank=False)
        refill(self._scheduler, cat.schedulers, blank=True)

    def closeEvent(self, event: QtGui.QCloseEvent) -> None:  # noqa: N802
        _LOG.info("ui_close kind=%s model=%s", self._chat.endpoint.kind.value, self._chat.endpoint.selected_model)
        self._timer.stop()
        self._chat.abort()
        self._images.cancel()
        self._bridge.shutdown()
        self._transport.close()
        super().closeEvent(event)

