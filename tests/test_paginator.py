import pytest
from conftest import make_paragraphs, monospace

from layout_prober import LayoutConfig, LayoutProber
from paginator import find_page_for_chunk, paginate
from segmenter import flatten_chunks, segment_paragraphs

CONFIG = LayoutConfig(width=100, font_size=20, line_height=20)


def _layout(paragraphs, config=CONFIG):
    chunks = segment_paragraphs(paragraphs)
    flat, _ = flatten_chunks(chunks)
    lines = LayoutProber(measure=monospace).probe(flat, config)
    return chunks, lines


def _lines_of(chunk, chunks, lines):
    _, spans = flatten_chunks(chunks)
    start, end = spans[chunk.sequence_index]
    return [line for line in lines if line.start_offset < end and line.end_offset > start]


def test_example_pages() -> None:
    chunks, lines = _layout(["Hello world. Bye now.", "Next para."])
    pages = paginate(chunks, lines, viewport_height=40)
    assert [p.sequence_indices for p in pages] == [[0, 1], [2, 3]]
    assert [p.number for p in pages] == [1, 2]
    assert pages[1].leading_sequence_index == 2


def test_whole_chunks_keeps_each_chunk_inside_its_page() -> None:
    chunks, lines = _layout(["Hello world. Bye now.", "Next para."])
    pages = paginate(chunks, lines, viewport_height=40, whole_chunks=True)
    assert [p.sequence_indices for p in pages] == [[0], [1, 2], [3]]


@pytest.mark.parametrize("height", [20, 45, 100, 333, 10_000])
@pytest.mark.parametrize("whole_chunks", [False, True])
def test_pages_cover_every_chunk_once_in_order(height: float, whole_chunks: bool) -> None:
    chunks, lines = _layout(make_paragraphs(7, sentences=4))
    pages = paginate(chunks, lines, viewport_height=height, whole_chunks=whole_chunks)
    flattened = [c for page in pages for c in page.chunks]
    assert flattened == chunks
    assert all(page.chunks for page in pages)


@pytest.mark.parametrize("height", [45, 100, 333])
def test_each_chunk_starts_within_its_page(height: float) -> None:
    chunks, lines = _layout(make_paragraphs(5))
    pages = paginate(chunks, lines, viewport_height=height)
    for page in pages:
        top = _lines_of(page.chunks[0], chunks, lines)[0].y
        for chunk in page.chunks:
            first = _lines_of(chunk, chunks, lines)[0]
            assert chunk is page.chunks[0] or (first.y - top) + first.height <= height


@pytest.mark.parametrize("height", [45, 100, 333])
def test_whole_chunk_pages_fit_the_viewport(height: float) -> None:
    chunks, lines = _layout(make_paragraphs(5))
    pages = paginate(chunks, lines, viewport_height=height, whole_chunks=True)
    for page in pages:
        page_lines = {line for chunk in page.chunks for line in _lines_of(chunk, chunks, lines)}
        top = min(line.y for line in page_lines)
        bottom = max(line.y + line.height for line in page_lines)
        if len(page.chunks) > 1:
            assert bottom - top <= height


def test_oversized_chunk_gets_its_own_page() -> None:
    long_sentence = "word " * 40 + "end."
    chunks, lines = _layout(["Short one.", long_sentence, "Tail."])
    pages = paginate(chunks, lines, viewport_height=40, whole_chunks=True)
    assert [p.sequence_indices for p in pages] == [[0, 1], [2], [3, 4]]


def test_first_line_mode_keeps_spanning_chunk_where_it_starts() -> None:
    long_sentence = "word " * 40 + "end."
    chunks, lines = _layout(["Short one.", long_sentence, "Tail."])
    pages = paginate(chunks, lines, viewport_height=40)
    assert [p.sequence_indices for p in pages] == [[0, 1, 2], [3, 4]]


def test_first_chunk_taller_than_viewport_is_not_an_empty_page() -> None:
    chunks, lines = _layout(["Tiny."], LayoutConfig(width=100, font_size=20, line_height=50))
    pages = paginate(chunks, lines, viewport_height=20)
    assert [p.sequence_indices for p in pages] == [[0]]


def test_no_lines_means_no_pages() -> None:
    assert paginate([], [], viewport_height=100) == []
    chunks = segment_paragraphs(["Something."])
    assert paginate(chunks, [], viewport_height=100) == []


def test_metrics_from_other_text_are_rejected() -> None:
    chunks, _ = _layout(make_paragraphs(3))
    _, short_lines = _layout(["Only this."])
    with pytest.raises(ValueError):
        paginate(chunks, short_lines, viewport_height=100)


def test_find_page_for_chunk() -> None:
    chunks, lines = _layout(make_paragraphs(4))
    pages = paginate(chunks, lines, viewport_height=60)
    for i, page in enumerate(pages):
        for index in page.sequence_indices:
            assert find_page_for_chunk(pages, index) == i
    assert find_page_for_chunk(pages, len(chunks) + 5) is None
