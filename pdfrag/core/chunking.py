"""Page-preserving, token-aware chunking of extracted PDF text.

Pages are chunked independently, so no chunk ever spans two pages. Each
chunk records the page-relative character span of its fresh content
(``position_start`` / ``position_end``). The chunk text is that content
prefixed by an overlap tail copied from the end of the previous chunk on the
same page.

Dual-layer mode runs the loop twice per document: broad context chunks
first, then small detail chunks. Each detail chunk points at the context
chunk on its page that covers it, and carries extracted facts.
"""

import re
import time
from dataclasses import dataclass
from typing import Any

from pdfrag.core.errors import InputValidationError
from pdfrag.core.facts import FactExtractor
from pdfrag.core.logging import get_logger
from pdfrag.core.schemas_chunks import (
    Chunk,
    ChunkingOptions,
    ChunkingResult,
    ChunkingValidation,
    ContextLayer,
    DetailLayer,
    Fact,
    Page,
)
from pdfrag.core.tokens import (
    TokenCounterLike,
    find_sentence_boundary,
    find_token_cut,
    get_token_counter,
)

logger = get_logger(__name__)

MAX_CHUNKS_PER_PAGE = 1000

SECTION_PATTERNS: dict[str, re.Pattern[str]] = {
    "hierarchical": re.compile(r"^(\d+(?:\.\d+){0,5})\s+(.+)"),
    "chapter": re.compile(r"^(?:chapter|ch\.?)\s+(\d+)[\s:]+(.+)", re.I),
    "appendix": re.compile(r"^(?:appendix|app\.?)\s+([a-z])\s+(.+)", re.I),
    "letter_section": re.compile(r"^([a-z])\.\s+(.+)", re.I),
    "roman": re.compile(r"^([ivx]+)\.\s+(.+)", re.I),
    "step": re.compile(r"^(?:step)\s+(\d+)[\s:]+(.+)", re.I),
}

_PROCEDURE_PATTERNS = [
    re.compile(r"procedure\s*:", re.I),
    re.compile(r"steps?\s*:", re.I),
    re.compile(r"instructions?\s*:", re.I),
    re.compile(r"to\s+(perform|complete|execute)", re.I),
]
_STEP_PATTERNS = [
    re.compile(r"(?:^|\n)\s*(?:\d+[.)]\s+|step\s+\d+|[a-z][.)]\s+)", re.I),
    re.compile(r"(?:first|second|third|next|then|finally)", re.I),
    re.compile(r"(?:^|\n)\s*[-*•]\s+"),
]
_DEFINITION_PATTERNS = [
    re.compile(r"is\s+defined\s+as", re.I),
    re.compile(r"means\s+", re.I),
    re.compile(r"refers\s+to", re.I),
    re.compile(r":\s*the\s+", re.I),
    re.compile(r"definition\s*:", re.I),
]
_CROSS_REF_PATTERNS = [
    re.compile(
        r"(?:see|refer to|reference|chapter|section|appendix|paragraph)\s+(\d+(?:\.\d+)*)", re.I
    ),
    re.compile(r"\((?:ref|see)\s+([^)]+)\)", re.I),
    re.compile(r"(?:page|p\.)\s+(\d+)", re.I),
]

# nesting depth of non-numbered headings; 0 is top level
SECTION_LEVELS: dict[str, int] = {
    "chapter": 0,
    "appendix": 0,
    "letter_section": 1,
    "roman": 1,
    "step": 2,
}

_WORD_RE = re.compile(r"\S+")
_NON_SPACE_RE = re.compile(r"\S")


@dataclass(frozen=True)
class _Span:
    """Fresh-content span on a page plus the overlap text that precedes it."""

    start: int
    end: int
    overlap: str


def detect_section_headers(text: str) -> list[dict[str, Any]]:
    """
    Find section headings, one per line, using the first matching pattern.

    Returns:
        List of {number, title, line, type, level, parent_section} dicts in page order
    """
    headers = []
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        for header_type, pattern in SECTION_PATTERNS.items():
            match = pattern.match(line)
            if match:
                headers.append(
                    {
                        "number": match.group(1),
                        "title": match.group(2).strip(),
                        "line": line_no,
                        "type": header_type,
                        "level": section_level(match.group(1), header_type),
                        "parent_section": parent_section(match.group(1), header_type),
                    }
                )
                break
    return headers


def section_level(number: str, header_type: str) -> int:
    """Nesting depth of a heading: "4.2.1" is level 2, a chapter is level 0."""
    if header_type == "hierarchical":
        return number.count(".")
    return SECTION_LEVELS.get(header_type, 0)


def parent_section(number: str, header_type: str) -> str | None:
    """Enclosing section number of a hierarchical heading ("4.2" for "4.2.1")."""
    if header_type == "hierarchical" and "." in number:
        return number.rsplit(".", 1)[0]
    return None


def extract_enhanced_metadata(content: str) -> dict[str, Any]:
    """Procedure/step/definition flags, cross references and section numbers."""
    cross_refs: list[str] = []
    for pattern in _CROSS_REF_PATTERNS:
        for match in pattern.finditer(content):
            if match.group(1):
                cross_refs.append(match.group(1).strip())

    section_numbers: list[str] = []
    for pattern in SECTION_PATTERNS.values():
        for match in re.finditer(pattern.pattern, content, pattern.flags | re.M):
            section_numbers.append(match.group(1))

    return {
        "contains_procedure": any(p.search(content) for p in _PROCEDURE_PATTERNS),
        "contains_steps": any(p.search(content) for p in _STEP_PATTERNS),
        "contains_definition": any(p.search(content) for p in _DEFINITION_PATTERNS),
        "cross_references": list(dict.fromkeys(cross_refs)),
        "section_numbers": list(dict.fromkeys(section_numbers)),
    }


def _overlap_tail(content: str, max_tokens: int, counter: TokenCounterLike) -> str:
    """Longest run of trailing words of ``content`` within ``max_tokens``."""
    if max_tokens <= 0 or not content:
        return ""
    spans = [m.span() for m in _WORD_RE.finditer(content)]
    if not spans:
        return ""

    left, right = 1, len(spans)
    best = 0
    while left <= right:
        mid = (left + right) // 2
        candidate = content[spans[-mid][0] :]
        if counter.count(candidate) <= max_tokens:
            best = mid
            left = mid + 1
        else:
            right = mid - 1

    return content[spans[-best][0] :] if best else ""


def _chunk_page_spans(
    text: str,
    size: int,
    overlap: int,
    preserve_sentences: bool,
    counter: TokenCounterLike,
) -> list[_Span]:
    first = _NON_SPACE_RE.search(text)
    if first is None:
        return []
    full_start = first.start()
    full_end = len(text.rstrip())

    if counter.count(text[full_start:full_end]) <= size:
        return [_Span(full_start, full_end, "")]

    spans: list[_Span] = []
    pos = full_start
    previous = ""
    while pos < full_end:
        if len(spans) >= MAX_CHUNKS_PER_PAGE:
            logger.warning(
                f"Chunk cap of {MAX_CHUNKS_PER_PAGE} reached for page, truncating",
                extra={"position": pos, "page_length": len(text)},
            )
            break

        overlap_text = _overlap_tail(previous, overlap, counter) if previous else ""
        budget = size - counter.count(overlap_text + " ") if overlap_text else size
        budget = max(budget, 1)

        remaining = text[pos:full_end]
        cut = find_token_cut(remaining, budget, counter)
        if cut == 0:
            # A single word larger than the budget still has to go somewhere
            cut = _WORD_RE.match(remaining).end()
        elif cut < len(remaining) and preserve_sentences:
            cut = find_sentence_boundary(remaining, cut)

        end = pos + len(remaining[:cut].rstrip())
        spans.append(_Span(pos, end, overlap_text))
        previous = text[pos:end]

        nxt = _NON_SPACE_RE.search(text, pos + cut)
        pos = nxt.start() if nxt and nxt.start() < full_end else full_end

    return spans


def _pick_parent(detail: _Span, context_spans: list[tuple[str, _Span]]) -> str:
    for chunk_id, span in context_spans:
        if span.start <= detail.start and detail.end <= span.end:
            return chunk_id

    best_id, best_overlap = context_spans[0][0], -1
    for chunk_id, span in context_spans:
        shared = min(span.end, detail.end) - max(span.start, detail.start)
        if shared > best_overlap:
            best_id, best_overlap = chunk_id, shared
    return best_id


class ChunkingEngine:
    """Splits document pages into token-bounded chunks."""

    def __init__(
        self,
        counter: TokenCounterLike | None = None,
        fact_extractor: FactExtractor | None = None,
    ):
        self.counter = counter or get_token_counter()
        self.fact_extractor = fact_extractor or FactExtractor()

    def chunk(
        self,
        pages: list[Page],
        document_id: str,
        user_id: str,
        options: ChunkingOptions | None = None,
    ) -> ChunkingResult:
        """
        Chunk a document's pages.

        Args:
            pages: Pages in document order
            document_id: Owning document
            user_id: Owning user
            options: Chunking options (defaults: 600/100 tokens, single layer)

        Returns:
            ChunkingResult. In dual-layer mode, context chunks take indices
            0..n-1 and detail chunks n..n+m-1.

        Raises:
            InputValidationError: If an overlap is not smaller than its chunk size
        """
        options = options or ChunkingOptions()
        self._validate_options(options)
        started = time.perf_counter()

        ordered_pages = sorted(pages, key=lambda p: p.page_number)
        prepared = [self._prepare_page(page, options) for page in ordered_pages]

        chunks: list[Chunk] = []
        context_by_page: dict[int, list[tuple[str, _Span]]] = {}

        for page, section_title, section in prepared:
            spans = _chunk_page_spans(
                page.text,
                options.chunk_size_tokens,
                options.chunk_overlap_tokens,
                options.preserve_sentences,
                self.counter,
            )
            for span in spans:
                chunk = self._build_chunk(
                    page,
                    section_title,
                    section,
                    span,
                    len(chunks),
                    document_id,
                    user_id,
                    ContextLayer(),
                    options,
                )
                chunks.append(chunk)
                context_by_page.setdefault(page.page_number, []).append((chunk.id, span))

        context_count = len(chunks)
        facts_by_chunk: dict[str, list[Fact]] = {}

        if options.dual_layer:
            for page, section_title, section in prepared:
                spans = _chunk_page_spans(
                    page.text,
                    options.detail_chunk_size,
                    options.detail_chunk_overlap,
                    options.preserve_sentences,
                    self.counter,
                )
                for span in spans:
                    parent_id = _pick_parent(span, context_by_page[page.page_number])
                    chunk = self._build_chunk(
                        page,
                        section_title,
                        section,
                        span,
                        len(chunks),
                        document_id,
                        user_id,
                        DetailLayer(parent_chunk_id=parent_id),
                        options,
                    )
                    if options.extract_facts:
                        facts = self.fact_extractor.extract_sync(
                            chunk.text, min_confidence=options.min_fact_confidence
                        ).facts
                        chunk = chunk.model_copy(update={"extracted_facts": facts})
                        facts_by_chunk[chunk.id] = facts
                    chunks.append(chunk)

        result = self._build_result(chunks, context_count, facts_by_chunk, started)

        logger.info(
            f"Chunked document {document_id} into {result.total_chunks} chunks",
            extra={
                "document_id": document_id,
                "pages": len(pages),
                "context_chunks": result.context_chunks,
                "detail_chunks": result.detail_chunks,
                "total_tokens": result.total_tokens,
            },
        )
        return result

    async def chunk_with_llm_facts(
        self,
        pages: list[Page],
        document_id: str,
        user_id: str,
        options: ChunkingOptions | None = None,
    ) -> ChunkingResult:
        """Chunk, then re-extract detail-chunk facts with the LLM pass enabled."""
        options = options or ChunkingOptions()
        result = self.chunk(pages, document_id, user_id, options)
        if not (options.dual_layer and options.extract_facts and options.use_llm_facts):
            return result

        started = time.perf_counter()
        chunks: list[Chunk] = []
        facts_by_chunk: dict[str, list[Fact]] = {}
        for chunk in result.chunks:
            if chunk.is_detail:
                extraction = await self.fact_extractor.extract(
                    chunk.text, use_llm=True, min_confidence=options.min_fact_confidence
                )
                chunk = chunk.model_copy(update={"extracted_facts": extraction.facts})
                facts_by_chunk[chunk.id] = extraction.facts
            chunks.append(chunk)

        enriched = self._build_result(chunks, result.context_chunks, facts_by_chunk, started)
        enriched.processing_time_ms += result.processing_time_ms
        return enriched

    def rechunk(
        self,
        chunks: list[Chunk],
        document_id: str,
        user_id: str,
        options: ChunkingOptions | None = None,
    ) -> ChunkingResult:
        """
        Re-chunk a document from its existing context chunks.

        Each page is rebuilt by placing every chunk's fresh content back at its
        recorded offset, then chunked again with the new options.
        """
        by_page: dict[int, list[Chunk]] = {}
        for chunk in chunks:
            if chunk.is_detail:
                continue
            by_page.setdefault(chunk.page_number, []).append(chunk)

        pages = []
        for page_number in sorted(by_page):
            page_chunks = sorted(by_page[page_number], key=lambda c: c.chunk_index)
            length = max(c.position_end for c in page_chunks)
            buffer = [" "] * length
            for c in page_chunks:
                width = c.position_end - c.position_start
                content = c.text[len(c.text) - width :] if width else ""
                buffer[c.position_start : c.position_end] = content
            pages.append(
                Page(
                    page_number=page_number,
                    text="".join(buffer),
                    section_title=page_chunks[0].section_title,
                )
            )

        logger.info(
            f"Re-chunking document {document_id} from {sum(len(v) for v in by_page.values())} chunks",
            extra={"document_id": document_id, "pages": len(pages)},
        )
        return self.chunk(pages, document_id, user_id, options)

    def validate_chunking(self, chunks: list[Chunk]) -> ChunkingValidation:
        """Report empty chunks, index gaps and pages going backwards."""
        issues: list[str] = []

        empty = [c for c in chunks if not c.text.strip()]
        if empty:
            issues.append(f"Found {len(empty)} empty chunks")

        ordered = sorted(chunks, key=lambda c: c.chunk_index)
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.chunk_index != prev.chunk_index + 1:
                issues.append(f"Chunk index gap between {prev.chunk_index} and {cur.chunk_index}")

        for layer in ("context", "detail"):
            layer_chunks = [c for c in ordered if c.layer.kind == layer]
            for prev, cur in zip(layer_chunks, layer_chunks[1:]):
                if cur.page_number < prev.page_number:
                    issues.append(f"Page number goes backward at chunk {cur.chunk_index}")

        token_counts = [c.token_count for c in chunks]
        chunks_per_page: dict[int, int] = {}
        for c in chunks:
            chunks_per_page[c.page_number] = chunks_per_page.get(c.page_number, 0) + 1

        stats = {
            "total_chunks": len(chunks),
            "total_tokens": sum(token_counts),
            "avg_tokens_per_chunk": sum(token_counts) / len(token_counts) if token_counts else 0,
            "min_tokens_per_chunk": min(token_counts) if token_counts else 0,
            "max_tokens_per_chunk": max(token_counts) if token_counts else 0,
            "chunks_per_page": chunks_per_page,
        }
        return ChunkingValidation(valid=not issues, issues=issues, stats=stats)

    # ------------------------------------------------------------------

    @staticmethod
    def _validate_options(options: ChunkingOptions) -> None:
        if options.chunk_overlap_tokens >= options.chunk_size_tokens:
            raise InputValidationError(
                f"chunk_size_tokens ({options.chunk_size_tokens}) must be greater than "
                f"chunk_overlap_tokens ({options.chunk_overlap_tokens})"
            )
        if options.dual_layer and options.detail_chunk_overlap >= options.detail_chunk_size:
            raise InputValidationError(
                f"detail_chunk_size ({options.detail_chunk_size}) must be greater than "
                f"detail_chunk_overlap ({options.detail_chunk_overlap})"
            )

    @staticmethod
    def _prepare_page(
        page: Page, options: ChunkingOptions
    ) -> tuple[Page, str | None, dict[str, Any] | None]:
        section_title = page.section_title
        header = None
        if section_title:
            found = detect_section_headers(section_title)
            header = found[0] if found else None
        elif options.detect_section_headers:
            headers = detect_section_headers(page.text)
            if headers:
                header = headers[0]
                section_title = f"{header['number']} {header['title']}"
        return page, section_title, header

    def _build_chunk(
        self,
        page: Page,
        section_title: str | None,
        section: dict[str, Any] | None,
        span: _Span,
        index: int,
        document_id: str,
        user_id: str,
        layer: ContextLayer | DetailLayer,
        options: ChunkingOptions,
    ) -> Chunk:
        content = page.text[span.start : span.end]
        text = f"{span.overlap} {content}" if span.overlap else content

        metadata: dict[str, Any] = {"overlap_chars": len(span.overlap)}
        if section:
            metadata["section_number"] = section["number"]
            metadata["section_level"] = section["level"]
            metadata["parent_section"] = section["parent_section"]
        if options.enhanced_metadata:
            metadata.update(extract_enhanced_metadata(content))

        return Chunk(
            id=f"{document_id}-chunk-{index}",
            document_id=document_id,
            user_id=user_id,
            chunk_index=index,
            layer=layer,
            text=text,
            token_count=self.counter.count(text),
            page_number=page.page_number,
            position_start=span.start,
            position_end=span.end,
            section_title=section_title,
            metadata=metadata,
        )

    @staticmethod
    def _build_result(
        chunks: list[Chunk],
        context_count: int,
        facts_by_chunk: dict[str, list[Fact]],
        started: float,
    ) -> ChunkingResult:
        total_tokens = sum(c.token_count for c in chunks)
        return ChunkingResult(
            chunks=chunks,
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            avg_tokens_per_chunk=total_tokens / len(chunks) if chunks else 0.0,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            context_chunks=context_count,
            detail_chunks=len(chunks) - context_count,
            extracted_facts=facts_by_chunk,
        )
