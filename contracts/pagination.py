"""
Slice a tall raster into fixed-size pages and assemble the PDF.

All geometry is kept as `Fraction` so the page slices always add up to the
scaled image height exactly; floats appear only at the reportlab boundary.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from io import BytesIO
from typing import Callable, Optional, Tuple

from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import ExportCancelled, RenderError

logger = logging.getLogger(__name__)

A4_MM = (210, 297)


class ScaleMode(str, Enum):
    # Whole image on one page.
    FIT_PAGE = 'fit_page'
    # Image fills the page width and runs onto as many pages as needed.
    FIT_WIDTH = 'fit_width'


@dataclass(frozen=True)
class PageSlice:
    index: int
    offset: Fraction
    top: Fraction
    bottom: Fraction

    @property
    def height(self) -> Fraction:
        return self.bottom - self.top


@dataclass(frozen=True)
class PageLayout:
    image_width: int
    image_height: int
    page_width: Fraction
    page_height: Fraction
    ratio: Fraction
    scaled_width: Fraction
    scaled_height: Fraction
    pages: Tuple[PageSlice, ...]

    @property
    def page_count(self) -> int:
        return len(self.pages)


def _as_fraction(value) -> Fraction:
    if isinstance(value, float):
        return Fraction(value).limit_denominator(10_000)
    return Fraction(value)


def paginate(image, page_size=A4_MM, scale_mode=ScaleMode.FIT_PAGE) -> PageLayout:
    """Compute the page layout for `image` (a PIL image or a (W, H) size) in mm."""
    width, height = getattr(image, 'size', image)
    if width <= 0 or height <= 0:
        raise RenderError('Cannot paginate an empty raster', details={'size': [width, height]})

    pw, ph = (_as_fraction(v) for v in page_size)
    if pw <= 0 or ph <= 0:
        raise ValueError(f'Invalid page size: {page_size}')

    scale_mode = ScaleMode(scale_mode)
    if scale_mode == ScaleMode.FIT_WIDTH:
        ratio = pw / width
    else:
        ratio = min(pw / width, ph / height)

    sw = width * ratio
    sh = height * ratio
    count = math.ceil(sh / ph)

    pages = tuple(
        PageSlice(index=p, offset=-p * ph, top=p * ph, bottom=min((p + 1) * ph, sh))
        for p in range(count)
    )
    return PageLayout(
        image_width=width,
        image_height=height,
        page_width=pw,
        page_height=ph,
        ratio=ratio,
        scaled_width=sw,
        scaled_height=sh,
        pages=pages,
    )


def build_pdf(image, layout: PageLayout, should_cancel: Optional[Callable[[], bool]] = None) -> bytes:
    """Draw the scaled image once per page, shifted up by each page's offset."""
    buffer = BytesIO()
    pw = float(layout.page_width)
    ph = float(layout.page_height)
    c = canvas.Canvas(buffer, pagesize=(pw * mm, ph * mm))
    reader = ImageReader(image)

    for page in layout.pages:
        if should_cancel is not None and should_cancel():
            logger.info("PDF assembly cancelled before page %d of %d", page.index + 1, layout.page_count)
            raise ExportCancelled('Export was cancelled', details={'page': page.index})

        # reportlab's origin is bottom-left; place the image top at ph - offset.
        y = float(layout.page_height - page.offset - layout.scaled_height)
        c.drawImage(
            reader,
            0,
            y * mm,
            width=float(layout.scaled_width) * mm,
            height=float(layout.scaled_height) * mm,
        )
        c.showPage()

    c.save()
    buffer.seek(0)
    return buffer.read()


def export_filename(contract) -> str:
    return f"contract-{getattr(contract, 'id', contract)}.pdf"


def contract_pdf(contract, page_size=A4_MM, scale_mode=ScaleMode.FIT_PAGE, should_cancel=None):
    """Render and paginate `contract`; returns (pdf_bytes, layout)."""
    from .document_renderer import render

    image = render(contract.sections, title=contract.title or None)
    layout = paginate(image, page_size=page_size, scale_mode=scale_mode)
    return build_pdf(image, layout, should_cancel=should_cancel), layout
