"""Tests for rasterization, A4 page assembly and the PDF file helpers."""

import math
import os

import pytest
from PIL import Image
from PyPDF2 import PdfReader
from reportlab.lib.pagesizes import A4

import bill_renderer
from bill_renderer import (
    SAMPLE_BILL_TEMPLATE,
    FontBook,
    Layout,
    PDFGenerationError,
    RectOp,
    TemplateLoadError,
    bill_pdf_path,
    build_bill_pdf,
    fill_template,
    generate_pdf_from_file,
    generate_pdf_from_html,
    layout_markup,
    merge_pdfs,
    page_height_px,
    paginate,
    pdf_page_count,
    rasterize,
    surface_width_px,
)


def expected_pages(bill, items, store):
    width = surface_width_px()
    layout = layout_markup(fill_template(SAMPLE_BILL_TEMPLATE, bill, items, store), FontBook())
    height = max(math.ceil(layout.height), int(page_height_px(width)))
    return len(paginate(height * A4[0] / width, A4[1]))


class TestGeneratePdfFromHtml:
    def test_single_page_bill(self, bill, items, store, tmp_path):
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path)
        assert pdf_file == os.path.join(tmp_path, "INV-1001.pdf")
        reader = PdfReader(pdf_file)
        assert len(reader.pages) == 1
        box = reader.pages[0].mediabox
        assert float(box.width) == pytest.approx(A4[0], abs=0.01)
        assert float(box.height) == pytest.approx(A4[1], abs=0.01)

    def test_no_items_still_one_page(self, bill, store, tmp_path):
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, [], store, folder=tmp_path)
        assert pdf_page_count(pdf_file) == 1

    def test_long_bill_spans_pages(self, bill, many_items, store, tmp_path):
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, many_items, store, folder=tmp_path)
        pages = pdf_page_count(pdf_file)
        assert pages >= 2
        assert pages == expected_pages(bill, many_items, store)

    def test_creates_missing_folder(self, bill, items, store, tmp_path):
        folder = tmp_path / "nested" / "bills"
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=str(folder))
        assert os.path.exists(pdf_file)

    def test_regenerating_overwrites(self, bill, items, many_items, store, tmp_path):
        generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, many_items, store, folder=tmp_path)
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path)
        assert pdf_page_count(pdf_file) == 1

    def test_failure_raises_and_writes_nothing(self, bill, items, store, tmp_path, monkeypatch, caplog):
        def no_surface(*args, **kwargs):
            raise RuntimeError("no surface")

        monkeypatch.setattr(bill_renderer.Image, "new", no_surface)
        with pytest.raises(PDFGenerationError) as excinfo:
            generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path)
        assert str(excinfo.value) == "Failed to generate PDF from HTML template"
        assert excinfo.value.__cause__ is None
        assert not os.path.exists(os.path.join(tmp_path, "INV-1001.pdf"))
        assert "no surface" in caplog.text

    def test_failure_keeps_previous_file(self, bill, items, store, tmp_path, monkeypatch):
        pdf_file = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path)
        before = open(pdf_file, "rb").read()

        def broken_jpeg(image, quality=88):
            raise OSError("encoder missing")

        monkeypatch.setattr(bill_renderer, "encode_jpeg", broken_jpeg)
        with pytest.raises(PDFGenerationError):
            generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path)
        assert open(pdf_file, "rb").read() == before


class TestBuildBillPdf:
    def test_output_is_deterministic(self, bill, items, store):
        first = build_bill_pdf(SAMPLE_BILL_TEMPLATE, bill, items, store)
        second = build_bill_pdf(SAMPLE_BILL_TEMPLATE, bill, items, store)
        assert first.startswith(b"%PDF")
        assert first == second

    def test_bad_timestamp_is_a_generation_error(self, bill, items, store):
        bill.created_at = "yesterday"
        with pytest.raises(PDFGenerationError):
            build_bill_pdf(SAMPLE_BILL_TEMPLATE, bill, items, store)


class TestRasterize:
    def test_minimum_height_and_white_background(self):
        image = rasterize(Layout([], 10), 200, 300, FontBook())
        try:
            assert image.size == (200, 300)
            assert image.mode == "RGB"
            assert image.getpixel((100, 150)) == (255, 255, 255)
        finally:
            image.close()

    def test_taller_layout_grows_surface(self):
        layout = Layout([RectOp(0, 0, 50, 499, "#000000")], 500)
        image = rasterize(layout, 100, 300, FontBook())
        try:
            assert image.size == (100, 500)
            assert image.getpixel((10, 450)) == (0, 0, 0)
        finally:
            image.close()

    def test_empty_surface_rejected(self):
        with pytest.raises(ValueError):
            rasterize(Layout([], 0), 0, 0, FontBook())

    def test_surface_released_on_draw_failure(self, monkeypatch):
        closed = []
        real_new = Image.new

        def tracking_new(*args, **kwargs):
            image = real_new(*args, **kwargs)
            real_close = image.close

            def close():
                closed.append(True)
                real_close()

            image.close = close
            return image

        monkeypatch.setattr(bill_renderer.Image, "new", tracking_new)
        layout = Layout([RectOp(0, 0, 10, 10, "not-a-colour")], 20)
        with pytest.raises(ValueError):
            rasterize(layout, 20, 20, FontBook())
        assert closed == [True]


class TestTemplateFiles:
    def test_generate_from_template_file(self, bill, items, store, tmp_path):
        template = tmp_path / "bill.html"
        template.write_text("<h1>{{storeName}}</h1><p>{{billNumber}}</p>", encoding="utf-8")
        pdf_file = generate_pdf_from_file(bill, items, store, template_path=str(template), folder=tmp_path)
        assert pdf_page_count(pdf_file) == 1

    def test_sample_template_is_the_default(self, bill, items, store, tmp_path):
        pdf_file = generate_pdf_from_file(bill, items, store, folder=tmp_path)
        assert os.path.basename(pdf_file) == "INV-1001.pdf"

    def test_missing_template(self, bill, items, store, tmp_path):
        with pytest.raises(TemplateLoadError) as excinfo:
            generate_pdf_from_file(bill, items, store, template_path=str(tmp_path / "nope.html"), folder=tmp_path)
        assert str(excinfo.value) == "Failed to load HTML template file"
        assert not os.listdir(tmp_path)


class TestPdfHelpers:
    def test_merge_skips_missing_files(self, bill, items, many_items, store, tmp_path):
        one = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, items, store, folder=tmp_path / "a")
        many = generate_pdf_from_html(SAMPLE_BILL_TEMPLATE, bill, many_items, store, folder=tmp_path / "b")
        merged = merge_pdfs([one, str(tmp_path / "missing.pdf"), many], str(tmp_path / "merged.pdf"))
        assert pdf_page_count(merged) == pdf_page_count(one) + pdf_page_count(many)

    def test_bill_pdf_path_sanitizes_separators(self):
        assert bill_pdf_path("2024/INV\\7", "out") == os.path.join("out", "2024-INV-7.pdf")
