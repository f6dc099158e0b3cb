import io
from dataclasses import replace

from backoffice.pipeline.adapters import missing_columns, read_rows
from backoffice.pipeline.definitions import ColumnSpec, ColumnType, SourceFormat


def test_read_rows_matches_headers_case_insensitively(zip3_unkeyed):
    handle = io.StringIO("\ufeffPOP, Zip3 ,ignored\n10,100,x\n20,101,y\n")
    assert list(read_rows(zip3_unkeyed, handle)) == [
        {"zip3": "100", "pop": "10"},
        {"zip3": "101", "pop": "20"},
    ]


def test_read_rows_skips_blank_lines_and_pads_short_rows(zip3_unkeyed):
    handle = io.StringIO("zip3,pop\n\n , \n100\n101,5\n")
    assert list(read_rows(zip3_unkeyed, handle)) == [
        {"zip3": "100", "pop": None},
        {"zip3": "101", "pop": "5"},
    ]


def test_read_rows_missing_column_is_none(zip3_unkeyed):
    handle = io.StringIO("zip3\n100\n")
    assert list(read_rows(zip3_unkeyed, handle)) == [{"zip3": "100", "pop": None}]


def test_read_rows_pipe_delimited(zip3_unkeyed):
    definition = replace(zip3_unkeyed, source_format=SourceFormat.PIPE)
    handle = io.StringIO("zip3|pop\n100|7\n")
    assert list(read_rows(definition, handle)) == [{"zip3": "100", "pop": "7"}]


def test_read_rows_quoted_fields(zip3_unkeyed):
    handle = io.StringIO('zip3,pop\n"100","1,000"\n')
    assert list(read_rows(zip3_unkeyed, handle)) == [{"zip3": "100", "pop": "1,000"}]


def test_read_rows_empty_file(zip3_unkeyed):
    assert list(read_rows(zip3_unkeyed, io.StringIO(""))) == []


def test_missing_columns_rewinds_handle(zip3_unkeyed):
    handle = io.StringIO("Zip3,population\n100,5\n")
    assert missing_columns(zip3_unkeyed, handle) == ("pop",)
    assert handle.tell() == 0
    assert list(read_rows(zip3_unkeyed, handle)) == [{"zip3": "100", "pop": None}]


def test_missing_columns_none_when_header_complete(zip3_unkeyed):
    assert missing_columns(zip3_unkeyed, io.StringIO("pop,zip3\n")) == ()


def test_mixed_case_column_names_match_any_header_case(zip3_unkeyed):
    definition = replace(zip3_unkeyed, columns=(ColumnSpec("Zip3"), ColumnSpec("POP", ColumnType.INT)))

    assert missing_columns(definition, io.StringIO("zip3,Pop\n")) == ()
    assert list(read_rows(definition, io.StringIO("zip3,Pop\n100,5\n"))) == [{"Zip3": "100", "POP": "5"}]
    assert missing_columns(definition, io.StringIO("zip3\n")) == ("POP",)


def test_headerless_rows_map_by_position(zip3_unkeyed):
    definition = replace(zip3_unkeyed, has_header=False)
    handle = io.StringIO("100,5\n\n101\n")

    assert missing_columns(definition, handle) == ()
    assert list(read_rows(definition, handle)) == [
        {"zip3": "100", "pop": "5"},
        {"zip3": "101", "pop": None},
    ]
