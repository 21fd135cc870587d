from __future__ import annotations

import re
import struct
import zlib

import pytest

import snpdf_utils as snu


def int_to_little_endian_bytes(value: int, num_bytes: int = 4) -> bytes:
    return value.to_bytes(num_bytes, byteorder='little')


def sized_block(content: bytes) -> bytes:
    return int_to_little_endian_bytes(len(content)) + content


def metadata_block(tags) -> bytes:
    """Length-prefixed block of <key:value> tags, from a dict or a list of pairs."""
    items = tags.items() if isinstance(tags, dict) else tags
    return sized_block(''.join(f'<{k}:{v}>' for k, v in items).encode('utf-8'))


class NoteBuilder:
    """Writes small .note containers: signature, header, bitmaps, layers, pages and footer."""

    def __init__(self, equipment: str | None = 'N6', signature: str = 'SN_FILE_VER_20230015') -> None:
        self.data = bytearray(b'note' + signature.encode('utf-8'))
        self.pages: list[tuple[int, int]] = []
        self.header_address = None
        if equipment is not None:
            self.header_address = self.append(metadata_block({
                'MODULE_LABEL': 'SNFILE_FEATURE',
                'FILE_TYPE': 'NOTE',
                'APPLY_EQUIPMENT': equipment}))

    def append(self, block: bytes) -> int:
        address = len(self.data)
        self.data += block
        return address

    def add_layer(self, name: str, protocol: str = 'RATTA_RLE', bitmap: bytes | None = None,
                  bitmap_field: str | None = None) -> int:
        bitmap_address = 0 if bitmap is None else self.append(sized_block(bitmap))
        if bitmap_field is None:
            bitmap_field = str(bitmap_address)
        return self.append(metadata_block([
            ('LAYERTYPE', 'NOTE'), ('LAYERPROTOCOL', protocol), ('LAYERNAME', name),
            ('LAYERPATH', 0), ('LAYERBITMAP', bitmap_field), ('LAYERVECTORGRAPH', 0)]))

    def add_page(self, layers: dict, layerseq: str | None = None, number: int | None = None) -> int:
        """`layers` maps a layer key to a layer block address (0 for an empty layer)."""
        tags = [('PAGESTYLE', 'style_white')]
        if layerseq is not None:
            tags.append(('LAYERSEQ', layerseq))
        tags.extend(layers.items())
        tags.append(('ORIENTATION', 1000))
        address = self.append(metadata_block(tags))
        self.pages.append((number if number is not None else len(self.pages) + 1, address))
        return address

    def build(self, footer_extra=None) -> bytes:
        tags = [(f'PAGE{n}', address) for n, address in self.pages]
        tags.append(('COVER_0', 0))
        tags.append(('DIRTY', 0))
        if self.header_address is not None:
            tags.append(('FILE_FEATURE', self.header_address))
        if footer_extra:
            tags.extend(footer_extra)
        footer_address = self.append(metadata_block(tags))
        return bytes(self.data) + b'tail' + int_to_little_endian_bytes(footer_address)


@pytest.fixture
def note_builder():
    return NoteBuilder


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keeps user settings and module defaults local to each test."""
    config_dir = tmp_path / 'config'
    monkeypatch.setattr(snu, 'CONFIG', str(config_dir))
    monkeypatch.setattr(snu, 'USER_SETTINGS_FN', str(config_dir / 'user_settings.json'))
    for details in snu.SETTINGS_DESC_DICT.values():
        monkeypatch.setattr(snu, details['var'], getattr(snu, details['var']))


def pdf_xref_offsets(data: bytes) -> list[int]:
    """Offsets of the in-use objects listed by the cross-reference table."""
    xref_start = int(re.search(rb'startxref\n(\d+)\n%%EOF', data).group(1))
    lines = data[xref_start:].split(b'\n')
    assert lines[0] == b'xref'
    count = int(lines[1].split()[1])
    records = lines[2:2 + count]
    assert records[0] == b'0000000000 65535 f '
    return [int(r[:10]) for r in records[1:]]


def pdf_object(data: bytes, object_id: int) -> bytes:
    offset = pdf_xref_offsets(data)[object_id - 1]
    end = data.index(b'\nendobj\n', offset)
    return data[offset:end]


def pdf_stream(data: bytes, object_id: int) -> bytes:
    offset = pdf_xref_offsets(data)[object_id - 1]
    start = data.index(b'stream\n', offset) + len(b'stream\n')
    length = int(re.search(rb'/Length (\d+)', data[offset:start]).group(1))
    assert data[start + length:start + length + len(b'\nendstream')] == b'\nendstream'
    return data[start:start + length]


def pdf_image_pixels(data: bytes, page_index: int) -> bytes:
    return zlib.decompress(pdf_stream(data, 5 + 3 * page_index))


def oversized_png(width: int, height: int) -> bytes:
    """PNG holding only a header that declares a huge picture."""
    header = struct.pack('>IIBBBBB', width, height, 8, 6, 0, 0, 0)
    chunk = struct.pack('>I', len(header)) + b'IHDR' + header + struct.pack('>I', zlib.crc32(b'IHDR' + header))
    end = struct.pack('>I', 0) + b'IEND' + struct.pack('>I', zlib.crc32(b'IEND'))
    return b'\x89PNG\r\n\x1a\n' + chunk + end
