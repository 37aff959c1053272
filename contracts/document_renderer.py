"""
Flatten contract sections into one tall raster image.

The output is a white RGB canvas of RENDER_WIDTH logical pixels drawn at
RENDER_SCALE oversampling, ready for `contracts.pagination.paginate`.
"""
from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from PIL import Image, ImageDraw, ImageFont

from .errors import RenderError

logger = logging.getLogger(__name__)

RENDER_WIDTH = 800
RENDER_SCALE = 2
MAX_RENDER_HEIGHT = 100_000

PADDING = 40
TITLE_SIZE = 18
BODY_SIZE = 12
HEADER_SIZE = 22
LINE_HEIGHT = 1.6
SECTION_GAP = 30

TEXT_COLOR = (51, 51, 51)
TITLE_COLOR = (44, 62, 80)
RULE_COLOR = (238, 238, 238)


@dataclass(frozen=True)
class _Block:
    text: str
    size: int
    color: tuple
    gap_after: int
    rule_below: bool = False


def strip_html(markup: str) -> str:
    if not markup:
        return ''
    text = re.sub(r'(?i)<\s*br\s*/?>', '\n', markup)
    text = re.sub(r'(?i)</\s*(p|div|h\d|li|tr)\s*>', '\n', text)
    text = re.sub(r'<[^>]+>', '', text)
    text = html.unescape(text)
    return re.sub(r'\n{3,}', '\n\n', text).strip()


def _font(size: int, scale: int):
    return ImageFont.load_default(size=size * scale)


def _validate_sections(sections: Any) -> List[dict]:
    if not isinstance(sections, (list, tuple)) or not sections:
        raise RenderError('Contract content has no sections to render')

    cleaned = []
    for idx, section in enumerate(sections):
        if not isinstance(section, dict):
            raise RenderError(f'Section {idx} is not an object', details={'index': idx})
        title = section.get('title', '')
        # Sections authored in the editor store their HTML under `content`.
        body = section.get('body', section.get('content', ''))
        if title is None:
            title = ''
        if body is None:
            body = ''
        if not isinstance(title, str) or not isinstance(body, str):
            raise RenderError(
                f'Section {idx} has a non-text title or body',
                details={'index': idx, 'section_id': section.get('id')},
            )
        cleaned.append({'id': section.get('id'), 'title': title.strip(), 'body': strip_html(body)})
    return cleaned


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> List[str]:
    lines: List[str] = []
    for paragraph in text.split('\n'):
        words = paragraph.split()
        if not words:
            lines.append('')
            continue
        current = ''
        for word in words:
            candidate = f"{current} {word}" if current else word
            if draw.textlength(candidate, font=font) <= max_width:
                current = candidate
                continue
            if current:
                lines.append(current)
            # Break words longer than the line on character boundaries.
            while draw.textlength(word, font=font) > max_width and len(word) > 1:
                cut = len(word)
                while cut > 1 and draw.textlength(word[:cut], font=font) > max_width:
                    cut -= 1
                lines.append(word[:cut])
                word = word[cut:]
            current = word
        lines.append(current)
    return lines


def _blocks(sections: Sequence[dict], title: Optional[str]) -> Iterable[_Block]:
    if title:
        yield _Block(title.upper(), HEADER_SIZE, (0, 0, 0), SECTION_GAP, rule_below=True)
    for section in sections:
        if section['title']:
            yield _Block(section['title'], TITLE_SIZE, TITLE_COLOR, 15, rule_below=True)
        yield _Block(section['body'], BODY_SIZE, TEXT_COLOR, SECTION_GAP)


def render(sections, *, title: Optional[str] = None, width: int = RENDER_WIDTH, scale: int = RENDER_SCALE) -> Image.Image:
    """Rasterize ordered sections into a single image of size (width*scale, H)."""
    cleaned = _validate_sections(sections)

    canvas_width = width * scale
    text_width = (width - 2 * PADDING) * scale
    measure = ImageDraw.Draw(Image.new('RGB', (1, 1)))

    laid_out = []
    height = PADDING * scale
    for block in _blocks(cleaned, title):
        font = _font(block.size, scale)
        line_px = int(block.size * LINE_HEIGHT * scale)
        lines = _wrap(measure, block.text, font, text_width)
        laid_out.append((block, font, line_px, lines, height))
        height += line_px * len(lines)
        if block.rule_below:
            height += 6 * scale
        height += block.gap_after * scale
    height += PADDING * scale

    if height > MAX_RENDER_HEIGHT:
        raise RenderError(
            f'Rendered document is too tall ({height}px)',
            details={'height': height, 'max_height': MAX_RENDER_HEIGHT},
        )

    try:
        image = Image.new('RGB', (canvas_width, height), 'white')
    except (MemoryError, ValueError) as e:
        raise RenderError(f'Could not allocate render canvas: {e}') from e

    draw = ImageDraw.Draw(image)
    left = PADDING * scale
    for block, font, line_px, lines, top in laid_out:
        y = top
        for line in lines:
            if line:
                draw.text((left, y), line, font=font, fill=block.color)
            y += line_px
        if block.rule_below:
            y += 3 * scale
            draw.line([(left, y), (canvas_width - left, y)], fill=RULE_COLOR, width=scale)

    logger.debug("Rendered %d sections into %dx%d raster", len(cleaned), canvas_width, height)
    return image
