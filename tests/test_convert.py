"""
Tests for projmem.convert — text passthrough, tables, optional converters.
"""

import pytest

from projmem.convert import convert_to_markdown, markdown_table


class TestTextFiles:
    def test_markdown_passthrough(self, tmp_path):
        p = tmp_path / "notes.md"
        p.write_text("# Title\n\nBody", encoding="utf-8")
        assert convert_to_markdown(str(p)) == "# Title\n\nBody"

    def test_no_extension_read_as_text(self, tmp_path):
        p = tmp_path / "README"
        p.write_text("plain", encoding="utf-8")
        assert convert_to_markdown(str(p)) == "plain"

    def test_unsupported(self, tmp_path):
        p = tmp_path / "a.bin"
        p.write_bytes(b"\x00")
        with pytest.raises(ValueError, match="Unsupported"):
            convert_to_markdown(str(p))


class TestMarkdownTable:
    def test_header_and_rows(self):
        out = markdown_table([["Name", "Role"], ["Ada", "Lead"]])
        assert out.splitlines() == [
            "| Name | Role |",
            "| --- | --- |",
            "| Ada | Lead |",
        ]

    def test_ragged_rows_padded_and_blank_rows_dropped(self):
        out = markdown_table([["a", "b", "c"], ["", None, ""], ["1"]])
        assert out.splitlines()[-1] == "| 1 |  |  |"
        assert len(out.splitlines()) == 3

    def test_pipes_escaped(self):
        out = markdown_table([["x|y"]])
        assert "x\\|y" in out

    def test_empty(self):
        assert markdown_table([]) == ""


class TestDocx:
    def test_headings_lists_tables(self, tmp_path):
        docx = pytest.importorskip("docx")
        doc = docx.Document()
        doc.add_heading("Project Plan", level=1)
        doc.add_paragraph("Launch is planned for March.")
        doc.add_paragraph("Write the changelog", style="List Bullet")
        table = doc.add_table(rows=2, cols=2)
        table.cell(0, 0).text = "Owner"
        table.cell(0, 1).text = "Task"
        table.cell(1, 0).text = "Ada"
        table.cell(1, 1).text = "Docs"
        path = tmp_path / "plan.docx"
        doc.save(str(path))

        md = convert_to_markdown(str(path))
        assert "# Project Plan" in md
        assert "Launch is planned for March." in md
        assert "- Write the changelog" in md
        assert "| Owner | Task |" in md


class TestXlsx:
    def test_sheet_section(self, tmp_path):
        openpyxl = pytest.importorskip("openpyxl")
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Budget"
        ws.append(["Item", "Cost"])
        ws.append(["Servers", 1200])
        path = tmp_path / "b.xlsx"
        wb.save(str(path))

        md = convert_to_markdown(str(path))
        assert md.startswith("## Sheet: Budget")
        assert "| Servers | 1200 |" in md
