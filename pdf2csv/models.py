"""Shared data models for the extraction pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Optional, Union


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextRun:
    """One positioned run of text on a page (PDF user space, y grows upward)."""

    text: str
    x: float
    y: float


@dataclass(frozen=True)
class ParagraphCandidate:
    """A reconstructed paragraph proposed to the classifier."""

    id: str
    page_number: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "page_number": self.page_number, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParagraphCandidate":
        return cls(
            id=str(data["id"]),
            page_number=int(data["page_number"]),
            text=str(data["text"]),
        )


@dataclass
class ParsedDocument:
    """Text-layer parse of one PDF."""

    name: str
    paragraphs: list[ParagraphCandidate] = field(default_factory=list)
    total_pages: int = 0
    pages_without_text_layer: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PageImage:
    """A rendered page ready to be sent to a vision model."""

    page_number: int
    total_pages: int
    image_data_url: str


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QualitySettings:
    """Deterministic acceptance thresholds; build via ``quality.sanitize_quality_settings``."""

    min_words_per_paragraph: int = 6
    min_alpha_chars_per_paragraph: int = 18
    short_paragraph_word_threshold: int = 12
    require_sentence_terminator_for_short_paragraphs: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OllamaSettings:
    temperature: float = 0.0
    top_p: float = 0.9
    top_k: int = 40
    min_p: float = 0.0
    repeat_penalty: float = 1.1
    context_size: int = 8192
    use_native_tool_calling: bool = False


@dataclass(frozen=True)
class PromptConfig:
    text_filter_system: str
    vision_system: str


# ---------------------------------------------------------------------------
# Model decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeepDecision:
    id: str
    section_heading: Optional[str] = None
    note: Optional[str] = None
    confidence: Optional[float] = None
    possible_boilerplate: bool = False


@dataclass(frozen=True)
class ChunkDecision:
    keep: list[KeepDecision]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VisionParagraph:
    text: str
    section_heading: Optional[str] = None
    note: Optional[str] = None
    confidence: Optional[float] = None
    possible_boilerplate: bool = False


@dataclass(frozen=True)
class VisionPageDecision:
    paragraphs: list[VisionParagraph]
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


@dataclass
class ExtractionRow:
    """One output row. ``paragraph_index`` is assigned after deduplication."""

    pdf_name: str
    paragraph: str
    paragraph_index: int = 0
    page_number: Optional[int] = None
    section_heading: str = ""
    notes: str = ""
    confidence: Optional[float] = None


@dataclass
class RunProgress:
    total_pdfs: int
    completed_pdfs: int
    current_pdf: str = ""
    current_page: int = 0
    total_pages_for_current: int = 0


# ---------------------------------------------------------------------------
# Batch manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextFilterTask:
    """Batch task: classify one chunk of text-layer candidates."""

    kind: ClassVar[str] = "text_filter"

    custom_id: str
    pdf_name: str
    file_index: int
    task_index: int
    chunk_index: int
    total_chunks: int
    chunk: tuple[ParagraphCandidate, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "custom_id": self.custom_id,
            "pdf_name": self.pdf_name,
            "file_index": self.file_index,
            "task_index": self.task_index,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "chunk": [candidate.to_dict() for candidate in self.chunk],
        }


@dataclass(frozen=True)
class VisionPageTask:
    """Batch task: OCR-style extraction of one rendered page."""

    kind: ClassVar[str] = "vision_page"

    custom_id: str
    pdf_name: str
    file_index: int
    task_index: int
    page_number: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "custom_id": self.custom_id,
            "pdf_name": self.pdf_name,
            "file_index": self.file_index,
            "task_index": self.task_index,
            "page_number": self.page_number,
            "total_pages": self.total_pages,
        }


BatchTask = Union[TextFilterTask, VisionPageTask]


def task_from_dict(data: dict[str, Any]) -> BatchTask:
    """Rebuild a task variant from its serialized form."""
    kind = data.get("kind")
    common = {
        "custom_id": str(data["custom_id"]),
        "pdf_name": str(data["pdf_name"]),
        "file_index": int(data["file_index"]),
        "task_index": int(data["task_index"]),
    }
    if kind == TextFilterTask.kind:
        return TextFilterTask(
            **common,
            chunk_index=int(data["chunk_index"]),
            total_chunks=int(data["total_chunks"]),
            chunk=tuple(ParagraphCandidate.from_dict(item) for item in data["chunk"]),
        )
    if kind == VisionPageTask.kind:
        return VisionPageTask(
            **common,
            page_number=int(data["page_number"]),
            total_pages=int(data["total_pages"]),
        )
    raise ValueError(f"Unknown batch task kind: {kind!r}")


@dataclass(frozen=True)
class FilePlan:
    pdf_name: str
    file_index: int
    mode: str  # "text" | "vision"
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilePlan":
        mode = str(data["mode"])
        if mode not in ("text", "vision"):
            raise ValueError(f"Unknown file plan mode: {mode!r}")
        return cls(
            pdf_name=str(data["pdf_name"]),
            file_index=int(data["file_index"]),
            mode=mode,
            total_pages=int(data["total_pages"]),
        )


@dataclass(frozen=True)
class BatchManifest:
    """Durable record linking batch ``custom_id`` values back to their origin."""

    model: str
    quality: QualitySettings
    files: list[FilePlan]
    tasks: list[BatchTask]
    created_at: str = ""
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at,
            "model": self.model,
            "quality": self.quality.to_dict(),
            "files": [plan.to_dict() for plan in self.files],
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchManifest":
        from .quality import sanitize_quality_settings

        files = data.get("files")
        tasks = data.get("tasks")
        if not isinstance(files, list) or not isinstance(tasks, list):
            raise ValueError("Batch manifest requires 'files' and 'tasks' lists.")
        plans = [FilePlan.from_dict(item) for item in files]
        restored = [task_from_dict(item) for item in tasks]
        known = {plan.file_index for plan in plans}
        for task in restored:
            if task.file_index not in known:
                raise ValueError(
                    f"Batch task {task.custom_id} refers to unknown file index {task.file_index}."
                )
        return cls(
            version=int(data.get("version", 1)),
            created_at=str(data.get("created_at", "")),
            model=str(data.get("model", "")),
            quality=sanitize_quality_settings(data.get("quality")),
            files=plans,
            tasks=restored,
        )


@dataclass(frozen=True)
class BatchResultLine:
    """One line of a batch output/error stream."""

    custom_id: str
    status_code: Optional[int] = None
    body: Any = None
    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchResultLine":
        response = data.get("response")
        if not isinstance(response, dict):
            response = {}
        status_code = response.get("status_code")
        if isinstance(status_code, bool) or not isinstance(status_code, int):
            status_code = None
        error = data.get("error")
        error_message = None
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            error_message = error["message"]
        return cls(
            custom_id=str(data.get("custom_id", "")),
            status_code=status_code,
            body=response.get("body"),
            error_message=error_message,
        )
