"""
The output sink: the evaluator's single ``write`` capability plus the
output-buffer stack driven by the ob_* builtins.
"""
from typing import Callable, List, Optional


class OutputSink:
    """Collects script output. Buffers stack; text reaching level 0 is emitted."""

    def __init__(self, on_write: Optional[Callable[[str], None]] = None):
        self.chunks: List[str] = []
        self.buffers: List[List[str]] = []
        self.on_write = on_write

    def write(self, text: str) -> None:
        if not text:
            return
        if self.buffers:
            self.buffers[-1].append(text)
            return
        self.chunks.append(text)
        if self.on_write is not None:
            self.on_write(text)

    def getvalue(self) -> str:
        return ''.join(self.chunks)

    # --- Buffering ---

    @property
    def level(self) -> int:
        return len(self.buffers)

    def start(self) -> None:
        self.buffers.append([])

    def contents(self) -> Optional[str]:
        if not self.buffers:
            return None
        return ''.join(self.buffers[-1])

    def clean(self) -> bool:
        if not self.buffers:
            return False
        self.buffers[-1].clear()
        return True

    def end(self, flush: bool) -> Optional[str]:
        """Pops the top buffer; when ``flush`` its text goes to the next level down."""
        if not self.buffers:
            return None
        text = ''.join(self.buffers.pop())
        if flush:
            self.write(text)
        return text

    def flush_all(self) -> None:
        while self.buffers:
            self.end(flush=True)
