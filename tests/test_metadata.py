from __future__ import annotations

import io

import pytest

import snpdf_utils as snu
from conftest import metadata_block, sized_block


@pytest.fixture
def scanner() -> snu.MetadataScanner:
    return snu.MetadataScanner()


def test_scan_keeps_tag_order(scanner: snu.MetadataScanner) -> None:
    tags = scanner.scan('<PAGESTYLE:style_white><MAINLAYER:1234><BGLAYER:0>')

    assert list(tags.items()) == [('PAGESTYLE', 'style_white'), ('MAINLAYER', '1234'), ('BGLAYER', '0')]


def test_scan_last_duplicate_wins(scanner: snu.MetadataScanner) -> None:
    tags = scanner.scan('<A:1><B:2><A:3>')

    assert tags == {'A': '3', 'B': '2'}
    assert list(tags) == ['A', 'B']


def test_scan_value_may_hold_colons_and_be_empty(scanner: snu.MetadataScanner) -> None:
    tags = scanner.scan('<TIME:12:30:00><EMPTY:>')

    assert tags == {'TIME': '12:30:00', 'EMPTY': ''}


def test_scan_ignores_text_between_tags(scanner: snu.MetadataScanner) -> None:
    assert scanner.scan('junk<A:1> more junk <B:2>tail') == {'A': '1', 'B': '2'}


def test_scan_restarts_on_nested_open_bracket(scanner: snu.MetadataScanner) -> None:
    assert scanner.scan('<broken<KEY:value>') == {'KEY': 'value'}


def test_scan_drops_tags_without_key_or_colon(scanner: snu.MetadataScanner) -> None:
    assert scanner.scan('<:orphan><nocolon><K:v>') == {'K': 'v'}


def test_scan_ignores_unterminated_tag(scanner: snu.MetadataScanner) -> None:
    assert scanner.scan('<A:1><B:never closed') == {'A': '1'}


def test_scan_layerinfo_value_with_brackets(scanner: snu.MetadataScanner) -> None:
    text = '<LAYERINFO:[{"layerId"#0,"name"#"Main Layer"}]><LAYERSEQ:MAINLAYER,BGLAYER>'

    tags = scanner.scan(text)

    assert tags['LAYERINFO'] == '[{"layerId"#0,"name"#"Main Layer"}]'
    assert tags['LAYERSEQ'] == 'MAINLAYER,BGLAYER'


def test_read_block_at_zero_is_empty(scanner: snu.MetadataScanner) -> None:
    assert snu.read_metadata_block(io.BytesIO(b'whatever'), 0, scanner) == {}


def test_read_block_at_address(scanner: snu.MetadataScanner) -> None:
    data = b'padding' + metadata_block({'LAYERPROTOCOL': 'RATTA_RLE', 'LAYERBITMAP': 42})

    tags = snu.read_metadata_block(io.BytesIO(data), 7, scanner)

    assert tags == {'LAYERPROTOCOL': 'RATTA_RLE', 'LAYERBITMAP': '42'}


def test_read_block_uses_exact_length(scanner: snu.MetadataScanner) -> None:
    block = metadata_block({'A': 1})
    data = b'xx' + block + b'<B:2>'

    assert snu.read_metadata_block(io.BytesIO(data), 2, scanner) == {'A': '1'}


def test_read_block_length_overrun_is_malformed(scanner: snu.MetadataScanner) -> None:
    data = b'xx' + (100).to_bytes(4, 'little') + b'<A:1>'

    with pytest.raises(snu.MalformedBlock):
        snu.read_metadata_block(io.BytesIO(data), 2, scanner)


def test_read_block_truncated_length_field(scanner: snu.MetadataScanner) -> None:
    with pytest.raises(snu.TruncatedFile):
        snu.read_metadata_block(io.BytesIO(b'abcde\x01\x00'), 5, scanner)


def test_read_block_invalid_utf8_is_malformed(scanner: snu.MetadataScanner) -> None:
    data = sized_block(b'<A:\xff\xfe>')

    with pytest.raises(snu.MalformedBlock):
        snu.read_metadata_block(io.BytesIO(b'x' + data), 1, scanner)


def test_parse_address() -> None:
    assert snu.parse_address('1234', 'PAGE1') == 1234
    assert snu.parse_address(' 7 ', 'PAGE1') == 7
    for bad in ['', '-1', '12a', '0x10', '١٢']:
        with pytest.raises(snu.InvalidAddress):
            snu.parse_address(bad, 'PAGE1')
