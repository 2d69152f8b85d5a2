from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

from PyQt6.QtCore import Qt
from PyQt6.QtWidgets import QLabel, QPushButton, QVBoxLayout, QWidget

STATE_LABELS: Dict[str, Dict[str, str]] = {
    "mute": {"on": "Muted", "off": "Unmuted"},
    "video": {"on": "Video On", "off": "Video Off"},
}


def state_label(kind: str, state: str) -> str:
    return STATE_LABELS.get(kind, {}).get(state, f"{kind.title()}: ?")


class TogglePanel(QWidget):
    """One button per toggle kind plus a status line."""

    def __init__(
        self,
        kinds: Sequence[str],
        on_activate: Callable[[str], object],
        parent: Optional[QWidget] = None,
    ) -> None:
        super().__init__(parent)
        self.setWindowTitle("Zoomer")
        self._on_activate = on_activate
        self._states: Dict[str, str] = {}
        self._indicators: Dict[str, str] = {}
        self.buttons: Dict[str, QPushButton] = {}

        layout = QVBoxLayout(self)
        for kind in kinds:
            button = QPushButton(state_label(kind, "unknown"))
            button.setCheckable(True)
            button.setMinimumHeight(48)
            button.clicked.connect(lambda _checked=False, k=kind: self._handle_click(k))
            layout.addWidget(button)
            self.buttons[kind] = button
        self.status_label = QLabel("")
        self.status_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.status_label.setWordWrap(True)
        layout.addWidget(self.status_label)

    def set_state(self, kind: str, state: str) -> None:
        button = self.buttons.get(kind)
        if button is None:
            return
        self._states[kind] = state
        button.setChecked(state == "on")
        self._refresh(kind)

    def set_indicator(self, kind: str, text: str) -> None:
        if kind not in self.buttons:
            return
        self._indicators[kind] = text
        self._refresh(kind)

    def _handle_click(self, kind: str) -> None:
        # Qt toggles the check mark on click; only the controller's display updates may move it.
        self.buttons[kind].setChecked(self._states.get(kind) == "on")
        self._on_activate(kind)

    def set_status_text(self, text: str) -> None:
        self.status_label.setText(text)

    def _refresh(self, kind: str) -> None:
        indicator = self._indicators.get(kind, "")
        if indicator:
            text = f"{kind.title()}: {indicator.replace(chr(10), ' ')}"
        else:
            text = state_label(kind, self._states.get(kind, "unknown"))
        self.buttons[kind].setText(text)
