#!/usr/bin/env python

"""
Converts Hiki wiki farms to markdown files.

TODO:
* Read page titles from info.db for front matter.

"""

# Standard packages
import argparse
import pathlib
import re
import shutil
import sys
from collections import namedtuple
from urllib.parse import unquote_to_bytes

# Additional packages
import yaml

# options
overwrite_outputs = False
debug_format = False
suppress_msgs = False
front_matter = False
source_encoding = 'euc_jp'
front_page = 'FrontPage'
readme_name = 'README.md'
attach_dir_name = 'attach'


def export_farm(source_root, destination_root):
    source_root = pathlib.Path(source_root)
    destination_root = pathlib.Path(destination_root)
    destination_root.mkdir(parents=True, exist_ok=True)

    for wiki_dir in sorted(source_root.iterdir()):
        if wiki_dir.is_dir():
            export_wiki(wiki_dir, destination_root / wiki_dir.name)

def export_wiki(wiki_dir, output_dir):
    output_dir.mkdir(parents=True, exist_ok=True)

    attach_dir = wiki_dir / 'cache' / 'attach'
    if attach_dir.is_dir():
        copy_attachments(attach_dir, output_dir / attach_dir_name)

    text_dir = wiki_dir / 'text'
    if text_dir.is_dir():
        convert_text_pages(text_dir, output_dir, wiki_dir.name)

    # The front page doubles as the landing page of the exported wiki.
    front_page_file = output_dir / f'{front_page}.md'
    if front_page_file.is_file():
        readme_file = output_dir / readme_name
        if may_write(readme_file):
            shutil.copyfile(front_page_file, readme_file)

def copy_attachments(attach_dir, output_dir):
    for item in sorted(attach_dir.rglob('*')):
        if not item.is_file():
            continue
        relative_path = item.relative_to(attach_dir).as_posix()
        output_file = output_dir / decode_path(relative_path)
        if not suppress_msgs: print(f'Copying attachment {item}')
        if not may_write(output_file):
            continue
        output_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(item, output_file)

def convert_text_pages(text_dir, output_dir, wiki_name):
    for item in sorted(text_dir.iterdir()):
        if item.is_file():
            convert_page_file(item, output_dir, wiki_name)

def convert_page_file(file, output_dir, wiki_name=None, page_id=None):
    if not suppress_msgs: print(f'Converting file {file}')

    if page_id is None:
        page_id = decode_filename(file.name)

    # Universal newlines: CRLF sources come out as plain LF.
    with open(file, encoding=source_encoding) as fh:
        text = fh.read()

    markdown_text = convert_to_markdown(text, page_id)

    if output_dir is None:
        write_page(sys.stdout, wiki_name, page_id, markdown_text)
        return
    output_file = output_dir / f'{page_id}.md'
    if not may_write(output_file):
        return
    with open(output_file, 'w', encoding='utf-8', newline='\n') as out_fh:
        write_page(out_fh, wiki_name, page_id, markdown_text)

def may_write(file):
    if not overwrite_outputs and file.exists():
        print(f'WARNING: Output file exists, will not overwrite: {file}')
        return False
    return True

def write_page(out_fh, wiki_name, page_id, txt):
    if front_matter:
        frontmatter = {'title': page_id}
        if wiki_name:
            frontmatter['wiki'] = wiki_name
        out_fh.write('---\n')
        yaml.dump(frontmatter, out_fh, default_flow_style=False, allow_unicode=True)
        out_fh.write('---\n\n')
    out_fh.write(txt)

# Filename decoding
#
# Hiki stores page and attachment names CGI-escaped: '+' for a space, and
# %XX for every byte of the name in the wiki's encoding. An escaped '/' is
# part of the name, not a directory separator, so it becomes a full-width
# solidus.

def decode_filename(segment):
    raw = unquote_to_bytes(segment.replace('+', ' '))
    return raw.decode(source_encoding).replace('/', '／')

def decode_path(relative_path):
    return '/'.join(decode_filename(s) for s in relative_path.split('/') if s)


# Block structure
#
# Each rule is tried at the start of a line, in order; the first one that
# matches claims the line (or lines, for preformatted text and tables).
# Paragraph matches anything, including an empty line, so the scan always
# advances.

Block = namedtuple('Block', ['kind', 'text', 'start', 'end', 'depth', 'indent'])

definition_pattern = re.compile(r':(.*?):(.*)')

block_rules = [
    ('comment', re.compile(r'//(.*)')),
    ('heading', re.compile(r'(!+)(.*)')),
    ('unordered_list', re.compile(r'(\*+)(.*)')),
    ('ordered_list', re.compile(r'(#+)(.*)')),
    ('definition_list', definition_pattern),
    ('preformatted', re.compile(r'([ \t]+).*(?:\n[ \t].*)*')),
    ('table', re.compile(r'\|\|.*(?:\n\|\|.*)*')),
    ('paragraph', re.compile(r'.*')),
]

def segment(text):
    blocks = []
    pos = 0
    while pos < len(text):
        for kind, pattern in block_rules:
            m = pattern.match(text, pos)
            if m:
                break
        end = m.end()
        if text.startswith('\n', end):
            end = end + 1
        depth = 0
        indent = ''
        if kind in ('heading', 'unordered_list', 'ordered_list'):
            depth = len(m[1])
        elif kind == 'preformatted':
            indent = m[1]
        blocks.append(Block(kind, m[0], pos, end, depth, indent))
        pos = end
    return blocks

def convert_to_markdown(text, page_id):
    chunks = []
    for block in segment(text):
        if debug_format: print(f'!{block.kind}(depth {block.depth}, "{block.text}")')
        chunks.append(convert_block(block, page_id))
        chunks.append(text[block.start + len(block.text):block.end])
    return ''.join(chunks)

def convert_block(block, page_id):
    kind = block.kind
    txt = block.text

    if kind == 'comment':
        txt = f'<!-- {txt[2:].strip()} -->'

    # Hiki headings: one '!' per level, no closing marker.
    elif kind == 'heading':
        txt = marker_line('#'*block.depth, txt[block.depth:])

    # Hiki lists indicate sublists by the number of markers, and you can omit
    # the space after them. Markdown wants sublists indented by four spaces,
    # and a space after the marker. Every ordered item is "1."; Markdown
    # renumbers them.
    elif kind == 'unordered_list':
        txt = marker_line('    '*(block.depth-1) + '*', txt[block.depth:])
    elif kind == 'ordered_list':
        txt = marker_line('    '*(block.depth-1) + '1.', txt[block.depth:])

    # Markdown has no definition lists; ":term:text" becomes a bullet.
    elif kind == 'definition_list':
        m = definition_pattern.match(txt)
        term = m[1]
        description = m[2]
        txt = marker_line(f'* {term}:', description)

    # Preformatted text. Hiki needs only a single leading space or tab;
    # Markdown gets a fenced block so the original indentation can go.
    elif kind == 'preformatted':
        indent = block.indent
        lines = [l[len(indent):] if l.startswith(indent) else l for l in txt.split('\n')]
        txt = '```\n' + '\n'.join(lines) + '\n```'

    # Tables. Markdown tables must have a header line, so the first row
    # always becomes one. The separator follows the width of the first row
    # even if later rows differ.
    elif kind == 'table':
        rows = [split_table_row(l) for l in txt.split('\n')]
        rows.insert(1, ['---']*len(rows[0]))
        txt = '\n'.join('| ' + ' | '.join(row) + ' |' for row in rows)

    return convert_inline(txt, page_id)

def marker_line(marker, rest):
    rest = rest.strip()
    return f'{marker} {rest}' if rest else marker

def split_table_row(line):
    # "||!" marks a header cell; Markdown has no per-cell headers.
    cells = re.split(r' *\|\|!? *', line.rstrip('\r'))[1:]
    while cells and cells[-1] == '':
        cells.pop()
    return cells


# Inline markup
#
# Alternatives are tried in order at each position, so a link wins over
# emphasis that starts inside it. All matches are shortest-match; that is
# what lets several links or plugins share a line.

inline_rules = [
    ('link', r"\[\[.*?\]\]"),
    ('emphasis', r"'''?.*?'''?"),
    ('strike', r"==.*?=="),
    ('plugin', r"\{\{.*?\}\}"),
]
inline_pattern = re.compile('|'.join(f'(?P<{kind}>{p})' for kind, p in inline_rules))

plugin_pattern = re.compile(r'\{\{\s*(attach_anchor|attach_view)\s*\((.*?)\)\s*\}\}')

def convert_inline(txt, page_id):

    def transform_link(s):
        # [[label]], [[label|target]]
        label, sep, target = s[2:-2].partition('|')
        label = label.strip()
        target = target.strip()
        if debug_format: print(f' !link("{label}", "{target}")')
        if not sep:
            return markdown_link(label, f'{label}.md')
        attachment = target[3:] if target.startswith('../') else target
        if attachment.startswith(':'):
            if attachment == ':':
                return s
            return markdown_link(label, attach_path(page_id, attachment[1:]))
        if re.match(r'https?:', target):
            return markdown_link(label, target)
        return markdown_link(label, f'{target}.md')

    def transform_emphasis(s):
        # Hiki's ''text'' and '''text''' both become Markdown bold.
        if debug_format: print(f' !emphasis("{s}")')
        return re.sub("'''?", '**', s)

    def transform_strike(s):
        if debug_format: print(f' !strike("{s}")')
        return s.replace('==', '~~')

    def transform_plugin(s):
        # {{attach_anchor(file)}}, {{attach_view(file, page)}}; anything
        # else is left for manual follow-up.
        m = plugin_pattern.fullmatch(s)
        if not m:
            if debug_format: print(f' !plugin("{s}") left as is')
            return s
        args = [a.strip().strip('\'"') for a in m[2].split(',')]
        name = args[0]
        if not name:
            if debug_format: print(f' !{m[1]}() has no file, left as is')
            return s
        owner = args[1] if len(args) > 1 and args[1] else page_id
        if debug_format: print(f' !{m[1]}("{name}", "{owner}")')
        link = markdown_link(name, attach_path(owner, name))
        return '!' + link if m[1] == 'attach_view' else link

    transforms = {
        'link': transform_link,
        'emphasis': transform_emphasis,
        'strike': transform_strike,
        'plugin': transform_plugin,
    }
    return inline_pattern.sub(lambda m: transforms[m.lastgroup](m[0]), txt)

def attach_path(page_id, file_path):
    return f'{attach_dir_name}/{page_id}/{file_path}'

def markdown_link(label, url):
    # CommonMark only accepts spaces and parentheses in a link destination
    # inside angle brackets.
    if re.search(r'[\s()]', url):
        url = f'<{url}>'
    return f'[{label}]({url})'


def main(argv=None):
    global overwrite_outputs
    global debug_format
    global suppress_msgs
    global front_matter
    global source_encoding
    global front_page

    parser = argparse.ArgumentParser(
        description='Convert a Hiki wiki farm to Markdown.',
        epilog="""
            Converting a single page file prints the Markdown to standard
            output, and is mostly useful for debugging.""")
    parser.add_argument('input', type=pathlib.Path, help='Hiki farm directory (one subdirectory per wiki), or a single Hiki page file.')
    parser.add_argument('output_dir', type=pathlib.Path, help='Output directory, created if missing. Required with directory input, disallowed with single-file input.', nargs='?')
    parser.add_argument('--debug', help='Generate debug output.', action='store_true')
    parser.add_argument('--silent', help='Suppress progress messages.', action='store_true')
    parser.add_argument('--overwrite', help='Overwrite existing output file(s).', action='store_true')
    parser.add_argument('--front-matter', help='Write YAML front matter at the top of every page.', action='store_true')
    parser.add_argument('--encoding', help='Encoding of Hiki page text and file names.', default=source_encoding)
    parser.add_argument('--front-page', help=f'Page copied to {readme_name} in each wiki.', default=front_page)
    parser.add_argument('--page-id', help='Page identifier for single-file input; defaults to the decoded file name.')
    args = parser.parse_args(argv)

    input = args.input
    output_dir = args.output_dir
    overwrite_outputs = args.overwrite
    debug_format = args.debug
    suppress_msgs = args.silent
    front_matter = args.front_matter
    source_encoding = args.encoding
    front_page = args.front_page

    if not input.exists():
        sys.exit(f'Input not found: {input}')
    input = input.resolve()

    if input.is_file():
        if output_dir:
            sys.exit('You may not specify an output when converting a single file.')
        suppress_msgs = True
        convert_page_file(input, None, None, args.page_id)
    else:
        if not input.is_dir():
            sys.exit('Hiki farm directory not found.')
        if output_dir is None:
            sys.exit('An output directory is required to export a farm.')
        export_farm(input, output_dir)

if __name__ == "__main__":
    main()
