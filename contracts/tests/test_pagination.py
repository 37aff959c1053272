"""
Tests for rasterization, page slicing and PDF assembly
"""
from fractions import Fraction
from io import BytesIO
from unittest import mock

from django.test import SimpleTestCase
from PIL import Image
from pypdf import PdfReader

from contracts import document_renderer
from contracts.document_renderer import RENDER_SCALE, RENDER_WIDTH, render, strip_html
from contracts.errors import ExportCancelled, RenderError
from contracts.pagination import ScaleMode, build_pdf, export_filename, paginate

from .helpers import SECTIONS


class PaginateTests(SimpleTestCase):
    def test_fit_page_tall_image(self):
        layout = paginate((1000, 3000), (210, 297))

        self.assertEqual(layout.ratio, Fraction(99, 1000))
        self.assertEqual(layout.scaled_width, 99)
        self.assertEqual(layout.scaled_height, 297)
        self.assertEqual(layout.page_count, 1)
        self.assertEqual(layout.pages[0].offset, 0)
        self.assertEqual((layout.pages[0].top, layout.pages[0].bottom), (0, 297))

    def test_fit_page_wide_image_is_limited_by_width(self):
        layout = paginate((2100, 1000), (210, 297))

        self.assertEqual(layout.ratio, Fraction(1, 10))
        self.assertEqual(layout.scaled_height, 100)
        self.assertEqual(layout.page_count, 1)

    def test_fit_width_runs_onto_several_pages(self):
        layout = paginate((1000, 3000), (210, 297), ScaleMode.FIT_WIDTH)

        self.assertEqual(layout.scaled_width, 210)
        self.assertEqual(layout.scaled_height, 630)
        self.assertEqual(layout.page_count, 3)
        self.assertEqual([p.offset for p in layout.pages], [0, -297, -594])
        self.assertEqual(
            [(p.top, p.bottom) for p in layout.pages],
            [(0, 297), (297, 594), (594, 630)],
        )

    def test_slices_cover_scaled_height_exactly(self):
        for size in [(1600, 7919), (1600, 2263), (1234, 98765), (1, 1), (800, 800)]:
            for mode in ScaleMode:
                with self.subTest(size=size, mode=mode):
                    layout = paginate(size, (210, 297), mode)
                    self.assertEqual(layout.pages[0].top, 0)
                    for prev, nxt in zip(layout.pages, layout.pages[1:]):
                        self.assertEqual(prev.bottom, nxt.top)
                    self.assertEqual(layout.pages[-1].bottom, layout.scaled_height)
                    self.assertEqual(sum(p.height for p in layout.pages), layout.scaled_height)
                    self.assertTrue(all(p.height > 0 for p in layout.pages))

    def test_accepts_an_image(self):
        layout = paginate(Image.new('RGB', (1000, 3000)), (210, 297))
        self.assertEqual((layout.image_width, layout.image_height), (1000, 3000))

    def test_empty_raster_is_rejected(self):
        with self.assertRaises(RenderError):
            paginate((0, 100))

    def test_export_filename(self):
        contract = mock.Mock(id='c0ffee00-0000-4000-8000-000000000001')
        self.assertEqual(export_filename(contract), 'contract-c0ffee00-0000-4000-8000-000000000001.pdf')


class BuildPdfTests(SimpleTestCase):
    def test_page_count_matches_layout(self):
        image = Image.new('RGB', (100, 600), 'white')
        layout = paginate(image, (210, 297), ScaleMode.FIT_WIDTH)

        pdf = build_pdf(image, layout)

        reader = PdfReader(BytesIO(pdf))
        self.assertEqual(layout.page_count, 5)
        self.assertEqual(len(reader.pages), 5)
        self.assertAlmostEqual(float(reader.pages[0].mediabox.width), 595.2756, places=2)
        self.assertAlmostEqual(float(reader.pages[0].mediabox.height), 841.8898, places=2)

    def test_cancellation_between_pages(self):
        image = Image.new('RGB', (100, 600), 'white')
        layout = paginate(image, (210, 297), ScaleMode.FIT_WIDTH)
        calls = []

        def should_cancel():
            calls.append(1)
            return len(calls) > 2

        with self.assertRaises(ExportCancelled):
            build_pdf(image, layout, should_cancel=should_cancel)
        self.assertEqual(len(calls), 3)


class RenderTests(SimpleTestCase):
    def test_renders_at_oversampled_width(self):
        image = render(SECTIONS, title='Residential Lease')

        self.assertEqual(image.mode, 'RGB')
        self.assertEqual(image.width, RENDER_WIDTH * RENDER_SCALE)
        self.assertGreater(image.height, 0)

    def test_longer_body_is_taller(self):
        short = render([{'title': 'Term', 'body': 'Twelve months.'}])
        long = render([{'title': 'Term', 'body': 'Twelve months. ' * 400}])

        self.assertGreater(long.height, short.height)

    def test_scale_changes_canvas_width(self):
        self.assertEqual(render(SECTIONS, scale=1).width, RENDER_WIDTH)

    def test_content_key_is_accepted(self):
        image = render([{'id': 'a', 'title': 'Clause', 'content': '<p>Editor HTML</p>'}])
        self.assertEqual(image.width, RENDER_WIDTH * RENDER_SCALE)

    def test_malformed_sections(self):
        for sections in ([], None, 'text', [['title', 'body']], [{'title': 'Rent', 'body': 950}], [{'title': 3}]):
            with self.subTest(sections=sections):
                with self.assertRaises(RenderError):
                    render(sections)

    def test_canvas_height_limit(self):
        with mock.patch.object(document_renderer, 'MAX_RENDER_HEIGHT', 200):
            with self.assertRaises(RenderError) as ctx:
                render(SECTIONS)
        self.assertEqual(ctx.exception.details['max_height'], 200)

    def test_strip_html(self):
        self.assertEqual(
            strip_html('<p>Rent &amp; charges</p><p>Due <b>monthly</b><br/>in advance</p>'),
            'Rent & charges\nDue monthly\nin advance',
        )
        self.assertEqual(strip_html(''), '')
