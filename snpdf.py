import snpdf_utils as snu
import snpdf_render as render
import snpdf_pdf as pdf
import os
import sys
import time
import argparse
from concurrent.futures import ThreadPoolExecutor

VERSION = 1.0
NOTE_EXTENSION = '.note'
PDF_EXTENSION = '.pdf'


def render_page_objects(note_fn, notebook, page_index, page_size, policy):
    """ Worker: renders a page and builds its PDF objects """
    canvas = render.render_page_from_file(note_fn, notebook, page_index)
    return pdf.page_objects(page_index, canvas, page_size, policy)


def render_pages(note_fn, notebook, workers, page_size, policy):
    """ Returns the PDF objects of every page, in page order """
    executor = ThreadPoolExecutor(max_workers=max(1, workers))
    try:
        futures = [
            executor.submit(render_page_objects, note_fn, notebook, i, page_size, policy)
            for i in range(len(notebook.pages))]
        return [a_future.result() for a_future in futures]
    except BaseException:
        # pages still queued are not rendered once one has failed
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)


def write_output(output_fn, data):
    """ Writes next to the target, then moves into place, so that a failed
        conversion never leaves a partial file """
    output_dir = os.path.dirname(output_fn)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    temp_fn = f'{output_fn}.part'
    try:
        with open(temp_fn, 'wb') as f:
            f.write(data)
        os.replace(temp_fn, output_fn)
    except BaseException:
        if os.path.exists(temp_fn):
            os.remove(temp_fn)
        raise


def convert_note(note_fn, output_fn, workers=None, page_size=None, policy=None, metadata=False):
    """
    Converts one notebook to PDF.

    Input:
        - note_fn: path of the .note file
        - output_fn: path of the PDF to write
        - workers: number of page rendering threads
        - page_size: (width, height) of the PDF pages, in points
        - policy: 'fit' or 'stretch'
        - metadata: also save the notebook structure as <output_fn>.json
    Output:
        - the number of pages written
    Raises SnpdfError subclasses when the notebook cannot be converted.
    """
    if workers is None:
        workers = snu.WORKERS
    if page_size is None:
        page_size = (snu.PDF_PAGE_WIDTH, snu.PDF_PAGE_HEIGHT)
    if policy is None:
        policy = snu.PDF_SCALE_POLICY

    notebook = snu.load_notebook(note_fn)
    print(f'  > {note_fn}: {len(notebook.pages)} page(s), {notebook.geometry.name.lower()} {notebook.width}x{notebook.height}')

    pages_bodies = render_pages(note_fn, notebook, workers, page_size, policy)
    pdf_written = False
    try:
        write_output(output_fn, pdf.assemble_pdf(pages_bodies))
        pdf_written = True
        if metadata:
            write_metadata(f'{output_fn}.json', notebook)
    except OSError as e:
        if pdf_written:
            os.remove(output_fn)
        raise snu.IoFailure(f'Cannot write {output_fn}: {e}') from e
    return len(notebook.pages)


def write_metadata(json_fn, notebook):
    """ Saves the notebook structure, moved into place only once complete """
    temp_fn = f'{json_fn}.part'
    try:
        snu.save_json(temp_fn, snu.notebook_to_dict(notebook))
        os.replace(temp_fn, json_fn)
    except BaseException:
        if os.path.exists(temp_fn):
            os.remove(temp_fn)
        raise


def list_notes(input_dir):
    """ Relative paths of the .note files below input_dir, sorted """
    notes_list = []
    for dirpath, dirnames, filenames in os.walk(input_dir):
        dirnames.sort()
        for a_filename in sorted(filenames):
            if os.path.splitext(a_filename)[1].lower() == NOTE_EXTENSION:
                notes_list.append(os.path.relpath(os.path.join(dirpath, a_filename), input_dir))
    return notes_list


def output_name(note_fn):
    return f'{os.path.splitext(note_fn)[0]}{PDF_EXTENSION}'


def convert_directory(input_dir, output_dir, **kwargs):
    """ Converts every .note file of input_dir, mirroring sub-directories in output_dir.
        A failing file is reported and the batch continues.
        Returns the list of written PDFs and the list of (note, error) failures """
    converted = []
    failures = []
    notes_list = list_notes(input_dir)
    print(f'  > Found {len(notes_list)} notebook(s) in {input_dir}')
    for a_note in notes_list:
        note_fn = os.path.join(input_dir, a_note)
        output_fn = os.path.join(output_dir, output_name(a_note))
        try:
            convert_note(note_fn, output_fn, **kwargs)
            converted.append(output_fn)
        except Exception as e:
            print(f'*** {a_note}: {type(e).__name__}: {e}')
            failures.append((note_fn, f'{type(e).__name__}: {e}'))
    return converted, failures


def build_parser(user_settings):
    """ Command line parser. Defaults are the saved user settings, else the hard-coded values """
    parser = argparse.ArgumentParser(description="Converts Supernote .note notebooks to PDF.")
    parser.add_argument("input", help="A .note file, or a directory of .note files")
    parser.add_argument("output", nargs='?', default=None, help="The PDF file, or the output directory")

    for long_param, details in snu.SETTINGS_DESC_DICT.items():
        a_variable_value = getattr(snu, details['var'])
        if long_param in user_settings:
            a_variable_value = user_settings[long_param]
        description = details['description']
        param_type = details['type']

        if param_type == bool:  # Add a '-no-' prefix option to set boolean values
            parser.add_argument(f'--{long_param}', action='store_true', default=a_variable_value, help=f'{description}. [%(default)s]')
            parser.add_argument(f'--no-{long_param}', action='store_true', default=None, help='')
        elif 'choices' in details:
            parser.add_argument(
                f'-{details["short"]}', f'--{long_param}', choices=details['choices'], type=param_type,
                default=a_variable_value, help=f'{description}. [%(default)s]')
        else:
            parser.add_argument(
                f'-{details["short"]}', f'--{long_param}', type=param_type,
                default=a_variable_value, help=f'{description}. [%(default)s]')

    parser.add_argument('--metadata', action='store_true', help='Also saves the notebook structure as a json file next to each PDF')
    parser.add_argument('--reset', action='store_true', help='Reset to hard-coded values')
    return parser


def apply_settings(args_dict):
    """ Applies the settings to the module globals and returns them """
    new_user_settings = {}
    for long_param, details in snu.SETTINGS_DESC_DICT.items():
        a_value = args_dict[long_param]
        if details['type'] == bool and args_dict.get(f'no_{long_param}'):
            a_value = False
        new_user_settings[long_param] = a_value
        setattr(snu, details['var'], a_value)
    return new_user_settings


def main(argv=None):
    user_settings = snu.load_user_settings()
    if argv is None:
        argv = sys.argv[1:]
    if '--reset' in argv:
        user_settings = {}
    args = build_parser(user_settings).parse_args(argv)
    new_user_settings = apply_settings(vars(args))

    print()
    print(f'SNPDF Version {VERSION}')
    print('-----------------')
    print()

    if snu.WORKERS < 1:
        print(f'*** Invalid number of workers: {snu.WORKERS}')
        return 2
    if snu.PDF_PAGE_WIDTH <= 0 or snu.PDF_PAGE_HEIGHT <= 0:
        print(f'*** Invalid page size: {snu.PDF_PAGE_WIDTH}x{snu.PDF_PAGE_HEIGHT}')
        return 2
    snu.save_user_settings(new_user_settings)

    options = {
        'workers': snu.WORKERS,
        'page_size': (snu.PDF_PAGE_WIDTH, snu.PDF_PAGE_HEIGHT),
        'policy': snu.PDF_SCALE_POLICY,
        'metadata': args.metadata}
    start_time = time.time()

    if os.path.isdir(args.input):
        output_dir = args.output if args.output else args.input
        converted, failures = convert_directory(args.input, output_dir, **options)
        print()
        print(f'  > Converted {len(converted)} notebook(s) in {time.time() - start_time:.1f}s')
        if failures:
            print(f'*** {len(failures)} notebook(s) failed:')
            for note_fn, error in failures:
                print(f'    - {note_fn}: {error}')
            return 1
        return 0

    if not os.path.exists(args.input):
        print(f'*** File not found: {args.input}')
        print('    > Please check the path. I am exiting ... <')
        return 1

    output_fn = args.output if args.output else output_name(args.input)
    if os.path.isdir(output_fn):
        output_fn = os.path.join(output_fn, output_name(os.path.basename(args.input)))
    try:
        page_nb = convert_note(args.input, output_fn, **options)
    except snu.SnpdfError as e:
        print(f'*** {args.input}: {type(e).__name__}: {e}')
        return 1
    print(f'  > Generated file: {output_fn} ({page_nb} page(s), {time.time() - start_time:.1f}s)')
    return 0


if __name__ == "__main__":
    sys.exit(main())
