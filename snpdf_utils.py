import json
import os
import enum
from dataclasses import dataclass

DEBUG_MODE = False
SNPDF_DIRECTORY = os.path.dirname(
    os.path.abspath(__file__))
CONFIG = os.environ.get('SNPDF_CONFIG', os.path.join(SNPDF_DIRECTORY, 'config'))
USER_SETTINGS_FN = os.path.join(CONFIG, 'user_settings.json')
MAX_HORIZONTAL_PIXELS_N6 = 1404        # Nomad, A5X, A6X
MAX_VERTICAL_PIXELS_N6 = 1872
MAX_HORIZONTAL_PIXELS_N5 = 1920        # Manta
MAX_VERTICAL_PIXELS_N5 = 2560
SIGNATURE_OFFSET = 4
SIGNATURE_LENGTH = 20
SIGNATURE_PREFIX = 'SN_FILE_VER_'
FOOTER_POINTER_SIZE = 4
DEFAULT_LAYER_ORDER = ['BGLAYER', 'MAINLAYER', 'LAYER1', 'LAYER2', 'LAYER3']
PROTOCOL_RLE = 'RATTA_RLE'
PROTOCOL_PNG = 'PNG'
WORKERS = 4
PDF_PAGE_WIDTH = 612
PDF_PAGE_HEIGHT = 816
PDF_SCALE_POLICY = 'fit'
PDF_SCALE_POLICIES = ['fit', 'stretch']
SETTINGS_DESC_DICT = {
    "workers": {
        "var": "WORKERS",
        "short": "w",
        "type": int,
        "description": "Number of threads rendering pages in parallel"},
    "page_policy": {
        "var": "PDF_SCALE_POLICY",
        "short": "pp",
        "type": str,
        "choices": PDF_SCALE_POLICIES,
        "description": "How a page bitmap is scaled on the PDF page: 'fit' keeps the aspect ratio, 'stretch' fills the page"},
    "page_width": {
        "var": "PDF_PAGE_WIDTH",
        "short": "pw",
        "type": float,
        "description": "PDF page width, in points"},
    "page_height": {
        "var": "PDF_PAGE_HEIGHT",
        "short": "ph",
        "type": float,
        "description": "PDF page height, in points"},
    "debug": {
        "var": "DEBUG_MODE",
        "type": bool,
        "description": "Prints details for every rendered layer"}
}


class SnpdfError(Exception):
    """ Base class of the conversion errors """


class IoFailure(SnpdfError):
    """ The source file could not be opened, positioned or read """


class MalformedBlock(SnpdfError):
    """ A length-prefixed block overruns the data or is not valid UTF-8 """


class TruncatedFile(MalformedBlock):
    """ The file ends before a fixed-size field could be read """


class InvalidAddress(SnpdfError):
    """ A required address or numeric field is not an unsigned integer """


class UnsupportedProtocol(SnpdfError):
    """ A layer uses an encoding this converter does not render """


class GeometryProfile(enum.Enum):
    """ Canvas size of a device family """
    STANDARD = (MAX_HORIZONTAL_PIXELS_N6, MAX_VERTICAL_PIXELS_N6)
    N5 = (MAX_HORIZONTAL_PIXELS_N5, MAX_VERTICAL_PIXELS_N5)

    @property
    def width(self):
        return self.value[0]

    @property
    def height(self):
        return self.value[1]


def series_bounds(equipment):
    """ Returns the geometry profile for an APPLY_EQUIPMENT value """
    if equipment in ['N5']:
        return GeometryProfile.N5
    return GeometryProfile.STANDARD


@dataclass(frozen=True)
class Layer:
    key: str
    protocol: str
    bitmap_address: int


@dataclass(frozen=True)
class Page:
    address: int
    layers: tuple


@dataclass(frozen=True)
class Notebook:
    signature: str
    pages: tuple
    geometry: GeometryProfile

    @property
    def width(self):
        return self.geometry.width

    @property
    def height(self):
        return self.geometry.height


def load_user_settings():
    """ Returns the settings saved by the last run, or an empty dict """
    if not os.path.exists(USER_SETTINGS_FN):
        return {}
    return read_json(USER_SETTINGS_FN)


def save_user_settings(settings):
    """ Saves the settings that were used, only keeping the known ones """
    known_settings = {k: v for k, v in settings.items() if k in SETTINGS_DESC_DICT}
    try:
        os.makedirs(CONFIG, exist_ok=True)
        save_json(USER_SETTINGS_FN, known_settings)
    except OSError as e:
        print(f'**- Could not save user settings: {e}')


def read_json(afilename):
    """ Reading a json from a filename """
    try:
        with open(afilename, 'r', encoding='utf-8') as file:
            a_json_text = file.read().strip().replace("\ufeff", "")
            return json.loads(a_json_text)
    except (OSError, ValueError) as e:
        print(f'*** read_json: {e}')
        return {}


def save_json(afilename, ajson):
    """ Saving a json with identation """
    with open(afilename, 'w', encoding='utf-8') as file:
        file.write(json.dumps(ajson, indent=4))


def read_exact(f, position, num_bytes):
    """ Reads num_bytes at position. Returns fewer bytes if the data ends before """
    try:
        f.seek(position)
        return f.read(num_bytes)
    except OSError as e:
        raise IoFailure(f'Cannot read {num_bytes} bytes at {position}: {e}') from e
    except ValueError as e:
        # negative seek positions
        raise IoFailure(f'Invalid position {position}: {e}') from e


def read_endian_int_at_position(f, position, num_bytes=4, endian='little'):
    """ Returns the endian integer equivalent of 'num_bytes' read
        from 'f' at 'position' """
    byte_sequence = read_exact(f, position, num_bytes)
    if len(byte_sequence) != num_bytes:
        raise TruncatedFile(
            f'Expected {num_bytes} bytes at {position}, got {len(byte_sequence)}')
    return int.from_bytes(byte_sequence, byteorder=endian)


def read_length_prefixed(f, address):
    """ Returns the content of the block at 'address': a 4 bytes little endian
        size, followed by that many bytes """
    block_size = read_endian_int_at_position(f, address)
    content = read_exact(f, address + 4, block_size)
    if len(content) != block_size:
        raise MalformedBlock(
            f'Block at {address} announces {block_size} bytes, only {len(content)} available')
    return content


def parse_address(value, field_name):
    """ Parses an unsigned integer field, raising InvalidAddress otherwise.
        Surrounding whitespace is tolerated: ' 7 ' gives 7 """
    text = value.strip() if isinstance(value, str) else ''
    if not text.isdigit() or not text.isascii():
        raise InvalidAddress(f'{field_name} is not an address: {value!r}')
    return int(text)


class MetadataScanner:
    """
    Extracts the <key:value> tags of a metadata block.

    The key is a non-empty run of characters without ':', '<' or '>'.
    The value runs up to the next '>' and may be empty or contain ':'.
    A '<' met while reading a key restarts the tag there, a '>' met while
    reading a key drops the tag. An unterminated tag at the end is ignored.
    When a key is repeated, the last value wins.
    """

    def scan(self, text):
        tags = {}
        length = len(text)
        position = text.find('<')
        while position != -1:
            key_start = position + 1
            cursor = key_start
            restart = None
            while cursor < length:
                char = text[cursor]
                if char == ':' or char == '>':
                    break
                if char == '<':
                    restart = cursor
                    break
                cursor += 1

            if restart is not None:
                position = restart
                continue
            if cursor >= length:
                break
            if text[cursor] == '>' or cursor == key_start:
                position = text.find('<', cursor + 1)
                continue

            value_end = text.find('>', cursor + 1)
            if value_end == -1:
                break
            tags[text[key_start:cursor]] = text[cursor + 1:value_end]
            position = text.find('<', value_end + 1)
        return tags


def read_metadata_block(f, address, scanner):
    """ Returns the ordered key/value dict of the metadata block at 'address'.
        Address 0 means 'not present' and gives an empty dict """
    if address == 0:
        return {}
    content = read_length_prefixed(f, address)
    try:
        text = content.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedBlock(f'Block at {address} is not valid UTF-8: {e}') from e
    return scanner.scan(text)


def get_signature(f):
    """ Returns the 20 characters file signature found at offset 4 """
    signature_bytes = read_exact(f, SIGNATURE_OFFSET, SIGNATURE_LENGTH)
    if len(signature_bytes) != SIGNATURE_LENGTH:
        raise TruncatedFile('File too short to hold a signature')
    try:
        signature = signature_bytes.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedBlock(f'Signature is not valid UTF-8: {e}') from e
    if not signature.startswith(SIGNATURE_PREFIX):
        print(f'**- Unexpected file signature: {signature!r}')
    return signature


def get_footer_address(f):
    """ The last 4 bytes of the file point to the footer block """
    try:
        file_size = f.seek(0, os.SEEK_END)
    except OSError as e:
        raise IoFailure(f'Cannot seek to the end of file: {e}') from e
    if file_size < SIGNATURE_OFFSET + SIGNATURE_LENGTH:
        raise TruncatedFile(f'File too short ({file_size} bytes)')
    footer_address = read_endian_int_at_position(f, file_size - FOOTER_POINTER_SIZE)
    if footer_address >= file_size:
        raise TruncatedFile(
            f'Footer address {footer_address} is beyond the end of file ({file_size} bytes)')
    return footer_address


def page_addresses(footer):
    """ Returns the page addresses, sorted by numeric page number """
    pages_list = []
    for a_key, a_value in footer.items():
        if a_key[:4] == 'PAGE' and a_key[4:].isdigit() and a_key[4:].isascii():
            pages_list.append((int(a_key[4:]), parse_address(a_value, a_key)))
    pages_list.sort(key=lambda x: x[0])
    return [address for _, address in pages_list]


def detect_geometry(f, footer, scanner):
    """ Reads APPLY_EQUIPMENT from the FILE_FEATURE block """
    if 'FILE_FEATURE' not in footer:
        return GeometryProfile.STANDARD
    header_address = parse_address(footer['FILE_FEATURE'], 'FILE_FEATURE')
    header = read_metadata_block(f, header_address, scanner)
    return series_bounds(header.get('APPLY_EQUIPMENT'))


def layer_order(page_meta):
    """ Layer keys in LAYERSEQ order, or the default order """
    if 'LAYERSEQ' in page_meta:
        return [x.strip() for x in page_meta['LAYERSEQ'].split(',') if x.strip() != '']
    return list(DEFAULT_LAYER_ORDER)


def parse_layer(f, key, layer_address, scanner):
    layer_meta = read_metadata_block(f, layer_address, scanner)
    protocol = layer_meta.get('LAYERPROTOCOL', '')
    try:
        bitmap_address = parse_address(layer_meta.get('LAYERBITMAP', '0'), 'LAYERBITMAP')
    except InvalidAddress:
        bitmap_address = 0
    return Layer(key=key, protocol=protocol, bitmap_address=bitmap_address)


def parse_page(f, page_address, scanner):
    page_meta = read_metadata_block(f, page_address, scanner)
    layers = []
    for a_key in layer_order(page_meta):
        if a_key in page_meta:
            layer_address = parse_address(page_meta[a_key], a_key)
            layers.append(parse_layer(f, a_key, layer_address, scanner))
    return Page(address=page_address, layers=tuple(layers))


def parse_notebook(f, scanner=None):
    """
    Builds the Notebook of an open binary file.

    The signature is read at offset 4, the footer address from the last
    4 bytes. The footer lists the pages (PAGE1, PAGE2, ...) and points to the
    FILE_FEATURE block that tells the device family. Each page block lists its
    layers, each layer block gives its protocol and bitmap address.
    """
    if scanner is None:
        scanner = MetadataScanner()
    signature = get_signature(f)
    footer = read_metadata_block(f, get_footer_address(f), scanner)
    geometry = detect_geometry(f, footer, scanner)
    pages = [parse_page(f, address, scanner) for address in page_addresses(footer)]
    return Notebook(signature=signature, pages=tuple(pages), geometry=geometry)


def load_notebook(note_fn, scanner=None):
    """ Opens and parses a .note file """
    try:
        with open(note_fn, 'rb') as a_note_file:
            return parse_notebook(a_note_file, scanner)
    except OSError as e:
        raise IoFailure(f'Cannot read {note_fn}: {e}') from e


def notebook_to_dict(notebook):
    """ Json-friendly view of a notebook structure """
    return {
        'signature': notebook.signature,
        'geometry': notebook.geometry.name,
        'width': notebook.width,
        'height': notebook.height,
        'pages': [
            {
                'address': a_page.address,
                'layers': [
                    {'key': a_layer.key, 'protocol': a_layer.protocol, 'bitmap': a_layer.bitmap_address}
                    for a_layer in a_page.layers]}
            for a_page in notebook.pages]}
