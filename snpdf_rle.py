import enum
import numpy as np

SPECIAL_LENGTH = 0x4000             # (*)
SPECIAL_LENGTH_MARKER = 0xff        # (*)
ESCAPE_FLAG = 0x80
COLORCODE_BLACK = 0x61
COLORCODE_BACKGROUND = 0x62         # transparent
COLORCODE_DARK_GRAY = 0x63
COLORCODE_GRAY = 0x64
COLORCODE_WHITE = 0x65
DARK_GRAY_CODES = [COLORCODE_DARK_GRAY, 0x9d, 0x9e]
GRAY_CODES = [COLORCODE_GRAY, 0xc9, 0xca]
TRANSPARENT = (0, 0, 0, 0)


class RleState(enum.Enum):
    IDLE = 0
    PENDING_ESCAPE = 1


def held_run_length(code):
    """ Length of an escape pair resolved on its own """
    return ((code & 0x7f) + 1) << 7


class RattaRleDecoder:
    """
    Decoder of the RATTA_RLE bitmaps.

    The stream is a sequence of (color, length) byte pairs. A length with the
    high bit set (other than 0xff) is an escape: it is held until the next
    pair. If the next pair has the same color, both lengths are combined into
    one run, otherwise the held run is flushed with its own length.
    """

    def __init__(self):
        self.state = RleState.IDLE
        self.held_color = None
        self.held_code = None
        self.output = bytearray()

    def emit(self, color, length):
        self.output += bytes((color,)) * length

    def feed(self, color, code):
        """ Processes one (color, length) pair """
        if self.state is RleState.PENDING_ESCAPE:
            held_color, held_code = self.held_color, self.held_code
            self.state = RleState.IDLE
            self.held_color = self.held_code = None
            if color == held_color:
                self.emit(color, 1 + code + held_run_length(held_code))
                return
            self.emit(held_color, held_run_length(held_code))

        if code == SPECIAL_LENGTH_MARKER:
            self.emit(color, SPECIAL_LENGTH)
        elif code & ESCAPE_FLAG:
            self.state = RleState.PENDING_ESCAPE
            self.held_color = color
            self.held_code = code
        else:
            self.emit(color, code + 1)

    def finish(self, expected_size):
        """ Flushes a pending escape, bounded by the pixels still missing """
        if self.state is RleState.PENDING_ESCAPE:
            remaining = max(expected_size - len(self.output), 0)
            self.emit(self.held_color, min(held_run_length(self.held_code), remaining))
            self.state = RleState.IDLE
            self.held_color = self.held_code = None

    def result(self, expected_size):
        """ Returns exactly expected_size pixel codes, padding with the transparent code """
        self.finish(expected_size)
        output = self.output
        if len(output) > expected_size:
            del output[expected_size:]
        elif len(output) < expected_size:
            output += bytes((COLORCODE_BACKGROUND,)) * (expected_size - len(output))
        return bytes(output)


def decode_rle(data, width, height):
    """ Returns the width*height pixel codes of a RATTA_RLE block.
        Malformed streams are padded or truncated, never rejected """
    if width < 0 or height < 0:
        raise ValueError(f'Invalid bitmap size {width}x{height}')
    expected_size = width * height
    decoder = RattaRleDecoder()
    # an odd trailing byte has no length and is ignored
    for i in range(0, len(data) - 1, 2):
        decoder.feed(data[i], data[i + 1])
    return decoder.result(expected_size)


def color_for_code(code):
    """ RGBA color of a pixel code """
    if code == COLORCODE_BLACK:
        return (0, 0, 0, 255)
    if code == COLORCODE_WHITE:
        return (255, 255, 255, 255)
    if code == COLORCODE_BACKGROUND:
        return TRANSPARENT
    if code in DARK_GRAY_CODES:
        return (0x9d, 0x9d, 0x9d, 255)
    if code in GRAY_CODES:
        return (0xc9, 0xc9, 0xc9, 255)
    # antialiasing pixels
    return (code, code, code, 255)


COLOR_LUT = np.array([color_for_code(code) for code in range(256)], dtype=np.uint8)


def map_pixels(pixels, width, height):
    """ Converts pixel codes to a height x width x 4 RGBA array """
    codes = np.frombuffer(pixels, dtype=np.uint8).reshape(height, width)
    return COLOR_LUT[codes]


def rle_encode(pixels):
    """ Encodes pixel codes as RATTA_RLE.
        Runs of up to 128 pixels use one pair, longer runs use 0xff markers
        of 16384 pixels followed by an escape pair and its complement """
    if isinstance(pixels, (bytes, bytearray)):
        pixels = np.frombuffer(bytes(pixels), dtype=np.uint8)
    else:
        pixels = np.asarray(pixels, dtype=np.uint8).ravel()
    result = bytearray()
    if pixels.size == 0:
        return bytes(result)

    # Detect where the value changes
    change_indices = np.where(np.diff(pixels) != 0)[0] + 1
    segment_starts = np.concatenate(([0], change_indices))
    segment_ends = np.concatenate((change_indices, [len(pixels)]))

    for start, end in zip(segment_starts, segment_ends):
        color_s = int(pixels[start])
        length_s = int(end - start)

        quotient, length_s = divmod(length_s, SPECIAL_LENGTH)
        result.extend([color_s, SPECIAL_LENGTH_MARKER] * quotient)
        if length_s == 0:
            continue
        if length_s <= 128:
            result.extend([color_s, length_s - 1])
        else:
            q_128, r_128 = divmod(length_s - 1, 128)
            result.extend([color_s, ESCAPE_FLAG | (q_128 - 1), color_s, r_128])

    return bytes(result)
