"""Rendering surface for a widget container.

The session never draws anything itself; it tells a Renderer what the
container should show. Embedders implement one per UI toolkit.
"""

import sys
from abc import ABC, abstractmethod
from typing import Optional, TextIO

from schemas import Challenge


class Renderer(ABC):
    @abstractmethod
    def show_loading(self, message: str = "Loading challenge...") -> None:
        ...

    @abstractmethod
    def show_challenge(self, challenge: Challenge, error: Optional[str] = None) -> None:
        """Draw the type-specific challenge UI, optionally with an inline error."""

    @abstractmethod
    def show_message(self, message: str) -> None:
        ...

    @abstractmethod
    def show_error(self, message: str) -> None:
        """Terminal error state; must offer a way to retry."""

    @abstractmethod
    def show_success(self, message: str = "Verification successful") -> None:
        ...

    @abstractmethod
    def highlight_cell(self, index: int) -> None:
        ...

    @abstractmethod
    def clear_highlights(self) -> None:
        ...

    @abstractmethod
    def dismiss(self) -> None:
        ...


class TerminalRenderer(Renderer):
    """Plain-text renderer, used for modal mode and the probe CLI."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self.grid_size = 0

    def _print(self, text: str) -> None:
        print(text, file=self.stream, flush=True)

    def show_loading(self, message="Loading challenge..."):
        self._print(f"[captcha] {message}")

    def show_challenge(self, challenge, error=None):
        data = challenge.data
        if challenge.type == "text":
            self._print(f"[captcha] Type the characters: {data.get('text')}")
        elif challenge.type == "image_selection":
            self._print(f"[captcha] {data.get('question', 'Select the matching images')}")
            for i, url in enumerate(data.get("images", [])):
                self._print(f"  [{i}] {url}")
        elif challenge.type == "pattern":
            self.grid_size = int(data.get("gridSize", 0))
            self._print(f"[captcha] Repeat the {data.get('patternLength', '?')}-step pattern "
                        f"on the {self.grid_size}x{self.grid_size} grid")
        elif challenge.type == "semantic":
            self._print(f"[captcha] {data.get('question')}")
            for i, option in enumerate(data.get("options", [])):
                self._print(f"  [{i}] {option}")
        if error:
            self._print(f"[captcha] ! {error}")

    def show_message(self, message):
        self._print(f"[captcha] {message}")

    def show_error(self, message):
        self._print(f"[captcha] ERROR: {message} (reset to try again)")

    def show_success(self, message="Verification successful"):
        self._print(f"[captcha] {message}")

    def highlight_cell(self, index):
        if self.grid_size:
            row, col = divmod(index, self.grid_size)
            self._print(f"[captcha] * cell {index} (row {row}, col {col})")
        else:
            self._print(f"[captcha] * cell {index}")

    def clear_highlights(self):
        self._print("[captcha] (pattern hidden)")

    def dismiss(self):
        self._print("[captcha] done")
