import gzip
import math

import brotli
import pytest

from disperse.compress import CompressError, compress_file, find_format, get_size_range, within_size_range
from disperse.models import CompressFormat


def test_get_size_range():
    assert get_size_range("(100,2000)") == (100, 2000)
    assert get_size_range("( 5 , * )") == (5, math.inf)
    assert get_size_range("png@") == (0, math.inf)


def test_within_size_range(tmp_path):
    path = tmp_path / "a.txt"
    path.write_bytes(b"x" * 50)
    assert within_size_range(path, None)
    assert within_size_range(path, "(10,100)")
    assert not within_size_range(path, "(100,*)")
    assert not within_size_range(path, "(0,10)")

    empty = tmp_path / "empty.txt"
    empty.write_bytes(b"")
    assert not within_size_range(empty, "(0,100)")
    assert within_size_range(empty, "(0,*)")


def test_find_format():
    items = [CompressFormat("gz", 5), CompressFormat("br"), CompressFormat("gz", 9)]
    assert find_format(items, "gz").level == 5
    assert find_format(items, "br") is items[1]
    assert find_format(None, "gz") is None


def test_gzip_sibling(tmp_path):
    path = tmp_path / "app.js"
    path.write_text("console.log('hello');\n" * 20, encoding="utf-8")
    result = compress_file(path, CompressFormat("gz"), "text/javascript")
    assert result == tmp_path / "app.js.gz"
    assert gzip.decompress(result.read_bytes()) == path.read_bytes()


def test_brotli_sibling_with_level(tmp_path):
    path = tmp_path / "style.css"
    path.write_text("body { color: red; }\n" * 20, encoding="utf-8")
    result = compress_file(path, CompressFormat("br", level=4), "text/css")
    assert result == tmp_path / "style.css.br"
    assert brotli.decompress(result.read_bytes()) == path.read_bytes()


def test_condition_skips_file(tmp_path):
    path = tmp_path / "tiny.js"
    path.write_text("x", encoding="utf-8")
    assert compress_file(path, CompressFormat("gz", condition="(1000,*)")) is None
    assert not (tmp_path / "tiny.js.gz").exists()


def test_unknown_format_raises(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("x", encoding="utf-8")
    with pytest.raises(CompressError):
        compress_file(path, CompressFormat("zip"))


def test_compress_format_from_dict():
    fmt = CompressFormat.from_dict({"format": " GZ ", "level": "6", "condition": "(0,*)"})
    assert (fmt.format, fmt.level, fmt.condition) == ("gz", 6, "(0,*)")
