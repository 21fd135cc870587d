"""
Minimal PDF writer for rendered pages.

Objects 1 and 2 are the catalog and the page tree. Page i (0-based) owns
three objects: the page (3+3i), its content stream (4+3i) and its image
(5+3i). Object bodies of a page only depend on its index, so they can be
built by several workers; the final write keeps a single offset cursor for
the cross-reference table.
"""
import zlib
import numpy as np

import snpdf_utils as snu

PDF_HEADER = b'%PDF-1.4\n%\xe2\xe3\xcf\xd3\n'
CATALOG_ID = 1
PAGES_ID = 2
FIRST_PAGE_ID = 3
OBJECTS_PER_PAGE = 3
IMAGE_NAME = 'Im0'


def page_object_ids(index):
    """ Returns the (page, content, image) object numbers of page 'index' """
    page_id = FIRST_PAGE_ID + OBJECTS_PER_PAGE * index
    return page_id, page_id + 1, page_id + 2


def pdf_number(value):
    """ Shortest PDF representation of a real number """
    text = f'{value:.4f}'.rstrip('0').rstrip('.')
    return '0' if text in ['', '-0'] else text


def image_placement(width, height, page_size, policy=snu.PDF_SCALE_POLICY):
    """ Returns (draw_width, draw_height, x, y) of a width x height bitmap on the page.
        'fit' keeps the bitmap aspect ratio and centers it, 'stretch' fills the page """
    page_width, page_height = page_size
    if policy == 'stretch':
        return page_width, page_height, 0, 0
    if policy != 'fit':
        raise ValueError(f'Unknown scale policy: {policy}')
    scale = min(page_width / width, page_height / height)
    draw_width = width * scale
    draw_height = height * scale
    return draw_width, draw_height, (page_width - draw_width) / 2, (page_height - draw_height) / 2


def stream_object(dictionary, data):
    entries = f'{dictionary} /Length {len(data)}'.strip()
    return f'<< {entries} >>\nstream\n'.encode('ascii') + data + b'\nendstream'


def image_object(canvas):
    """ RGB image XObject of a canvas, alpha dropped, deflate compressed """
    pixels = np.asarray(canvas, dtype=np.uint8)
    height, width = pixels.shape[:2]
    rgb = np.ascontiguousarray(pixels[:, :, :3]).tobytes()
    return stream_object(
        f'/Type /XObject /Subtype /Image /Width {width} /Height {height} '
        '/ColorSpace /DeviceRGB /BitsPerComponent 8 /Filter /FlateDecode',
        zlib.compress(rgb))


def content_object(width, height, page_size, policy):
    draw_width, draw_height, x, y = image_placement(width, height, page_size, policy)
    operators = ' '.join(pdf_number(v) for v in [draw_width, 0, 0, draw_height, x, y])
    return stream_object('', f'q {operators} cm /{IMAGE_NAME} Do Q'.encode('ascii'))


def page_object(index, page_size):
    _, content_id, image_id = page_object_ids(index)
    page_width, page_height = page_size
    return (
        f'<< /Type /Page /Parent {PAGES_ID} 0 R '
        f'/MediaBox [0 0 {pdf_number(page_width)} {pdf_number(page_height)}] '
        f'/Resources << /XObject << /{IMAGE_NAME} {image_id} 0 R >> >> '
        f'/Contents {content_id} 0 R >>').encode('ascii')


def page_objects(index, canvas, page_size=(snu.PDF_PAGE_WIDTH, snu.PDF_PAGE_HEIGHT), policy=snu.PDF_SCALE_POLICY):
    """ Returns the page, content and image object bodies of one page """
    height, width = np.asarray(canvas).shape[:2]
    return [
        page_object(index, page_size),
        content_object(width, height, page_size, policy),
        image_object(canvas)]


def assemble_pdf(pages_bodies):
    """ Writes the objects in order, then the cross-reference table and trailer """
    page_count = len(pages_bodies)
    kids = ' '.join(f'{page_object_ids(i)[0]} 0 R' for i in range(page_count))
    bodies = [
        f'<< /Type /Catalog /Pages {PAGES_ID} 0 R >>'.encode('ascii'),
        f'<< /Type /Pages /Kids [{kids}] /Count {page_count} >>'.encode('ascii')]
    for a_page_bodies in pages_bodies:
        bodies.extend(a_page_bodies)

    pdf = bytearray(PDF_HEADER)
    offsets = []
    for object_id, body in enumerate(bodies, start=1):
        offsets.append(len(pdf))
        pdf += f'{object_id} 0 obj\n'.encode('ascii')
        pdf += body
        pdf += b'\nendobj\n'

    xref_start = len(pdf)
    count = len(bodies) + 1
    pdf += f'xref\n0 {count}\n'.encode('ascii')
    pdf += b'0000000000 65535 f \n'
    for an_offset in offsets:
        pdf += f'{an_offset:010d} 00000 n \n'.encode('ascii')
    pdf += (
        f'trailer\n<< /Size {count} /Root {CATALOG_ID} 0 R >>\n'
        f'startxref\n{xref_start}\n%%EOF\n').encode('ascii')
    return bytes(pdf)


def build_pdf(canvases, page_size=(snu.PDF_PAGE_WIDTH, snu.PDF_PAGE_HEIGHT), policy=snu.PDF_SCALE_POLICY):
    """ Returns the PDF bytes of a list of canvases, one page each """
    return assemble_pdf([
        page_objects(i, a_canvas, page_size, policy) for i, a_canvas in enumerate(canvases)])
