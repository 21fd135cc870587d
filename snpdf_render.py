from io import BytesIO
import numpy as np
from PIL import Image, UnidentifiedImageError

import snpdf_utils as snu
import snpdf_rle as rle

WHITE = (255, 255, 255, 255)


def blank_canvas(width, height):
    """ Opaque white RGBA canvas """
    canvas = np.empty((height, width, 4), dtype=np.uint8)
    canvas[:, :] = WHITE
    return canvas


def overlay(canvas, layer):
    """ Composites 'layer' over 'canvas', in place.
        Transparent pixels keep the canvas, opaque pixels replace it """
    alpha = layer[:, :, 3]
    opaque = alpha == 255
    canvas[opaque] = layer[opaque]

    partial = (alpha > 0) & ~opaque
    if partial.any():
        src = layer[partial].astype(np.float64) / 255
        dst = canvas[partial].astype(np.float64) / 255
        src_a = src[:, 3:4]
        dst_a = dst[:, 3:4]
        out_a = src_a + dst_a * (1 - src_a)
        out_rgb = (src[:, :3] * src_a + dst[:, :3] * dst_a * (1 - src_a)) / np.where(out_a == 0, 1, out_a)
        blended = np.concatenate((out_rgb, out_a), axis=1)
        canvas[partial] = np.clip(np.rint(blended * 255), 0, 255).astype(np.uint8)
    return canvas


def rle_layer_image(content, width, height):
    pixels = rle.decode_rle(content, width, height)
    return rle.map_pixels(pixels, width, height)


def png_layer_image(content, width, height):
    """ Decodes an embedded PNG to a width x height RGBA array.
        Areas outside the picture are transparent """
    try:
        with Image.open(BytesIO(content)) as image:
            image = image.convert('RGBA')
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise snu.MalformedBlock(f'Cannot decode PNG layer: {e}') from e
    if image.size != (width, height):
        image = image.crop((0, 0, width, height))
    return np.asarray(image, dtype=np.uint8)


def layer_image(f, layer, width, height):
    """ Returns the RGBA array of a layer, or raises UnsupportedProtocol """
    if layer.protocol == snu.PROTOCOL_RLE:
        content = snu.read_length_prefixed(f, layer.bitmap_address)
        return rle_layer_image(content, width, height)
    if layer.protocol == snu.PROTOCOL_PNG:
        content = snu.read_length_prefixed(f, layer.bitmap_address)
        return png_layer_image(content, width, height)
    raise snu.UnsupportedProtocol(f'{layer.key} uses protocol {layer.protocol!r}')


def render_page(f, notebook, page):
    """ Composites the layers of a page on a white canvas, in layer order """
    width, height = notebook.width, notebook.height
    canvas = blank_canvas(width, height)
    for a_layer in page.layers:
        if a_layer.bitmap_address == 0:
            continue
        try:
            image = layer_image(f, a_layer, width, height)
        except snu.UnsupportedProtocol as e:
            print(f'**- Skipped layer at page address {page.address}: {e}')
            continue
        if snu.DEBUG_MODE:
            print(f'     - {a_layer.key} ({a_layer.protocol}) at {a_layer.bitmap_address}')
        overlay(canvas, image)
    return canvas


def render_page_from_file(note_fn, notebook, page_index):
    """ Renders one page with a read handle of its own """
    try:
        with open(note_fn, 'rb') as a_note_file:
            return render_page(a_note_file, notebook, notebook.pages[page_index])
    except OSError as e:
        raise snu.IoFailure(f'Cannot read {note_fn}: {e}') from e
