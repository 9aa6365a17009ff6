#! /usr/bin/env python

import argparse
import random
import re
import shutil
import string
import subprocess
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

# target file name -> (path inside the etcd repository, services and rpcs to keep)
# An empty service table keeps every message of the file.
PROTOS: Dict[str, Tuple[str, Dict[str, Sequence[str]]]] = {
    'kv.proto': ('api/mvccpb/kv.proto', {}),
    'rpc.proto': ('api/etcdserverpb/rpc.proto', {
        'KV': ('Range', 'Put', 'DeleteRange', 'Txn'),
        'Watch': ('Watch',),
        'Lease': ('LeaseGrant', 'LeaseRevoke', 'LeaseKeepAlive', 'LeaseTimeToLive'),
        'Auth': ('Authenticate',),
    }),
    'v3lock.proto': ('server/etcdserver/api/v3lock/v3lockpb/v3lock.proto', {
        'Lock': ('Lock', 'Unlock'),
    }),
}
PACKAGES = {
    'kv.proto': 'mvccpb',
    'rpc.proto': 'etcdserverpb',
    'v3lock.proto': 'v3lockpb',
}
IMPORT_PREFIX = 'etcdmux/grpc_api'

SOURCE_ROOT = (Path(__file__).parent / '..' / 'src').resolve()
PACKAGE_ROOT = SOURCE_ROOT / 'etcdmux' / 'grpc_api'

BLOCK_COMMENT = re.compile(r'/\*.*?\*/', re.S)
LINE_COMMENT = re.compile(r'//[^\n]*')
OPTION = re.compile(r'(?<![\w.])option(?=[\s(])')
FIELD_OPTIONS = re.compile(r'\s*\[\s*\([^\]]*\]')
BLOCK_START = re.compile(r'(message|service|enum)\s+(\w+)\s*\{')
IMPORT = re.compile(r'import\s+(?:public\s+)?"([^"]+)"\s*;')
RPC = re.compile(
    r'rpc\s+(\w+)\s*\(\s*(stream\s+)?([\w.]+)\s*\)\s*'
    r'returns\s*\(\s*(stream\s+)?([\w.]+)\s*\)\s*(?:\{\s*\}|;)',
)
FIELD_TYPE = re.compile(r'^\s*(?:repeated\s+|optional\s+)?([A-Za-z_][\w.]*)\s+\w+\s*=\s*\d+', re.M)
VERSION = re.compile(r"^ETCD_VERSION = '[^']*'$", re.M)


def exec_command(
    command: List[str],
    cwd: Optional[Path] = None,
    capture_stdout: Optional[bool] = False,
    capture_stderr: Optional[bool] = False,
):
    print('executing:', *command)
    proc = subprocess.Popen(
        ['/usr/bin/env'] + command, cwd=cwd,
        stdout=subprocess.PIPE if capture_stdout else None,
        stderr=subprocess.PIPE if capture_stderr else None,
    )
    out, err = proc.communicate()
    if proc.returncode != 0:
        exit(-1)
    return out, err


def build_proto(infile: Path, outdir: Path, includes: List[Path]):
    arguments = ['python', '-m', 'grpc_tools.protoc']
    for include in includes:
        arguments.append('-I=' + include.as_posix())
    arguments.append('--python_out=' + outdir.as_posix())
    arguments.append(infile.as_posix())
    exec_command(arguments, cwd=outdir)


def strip_options(source: str) -> str:
    """
    Drops every `option` statement (gogoproto, google.api.http, go_package, ...)
    and every custom field option; none of them affect the Python output.
    """
    result = []
    position = 0
    while (matched := OPTION.search(source, position)) is not None:
        result.append(source[position:matched.start()])
        depth = 0
        end = matched.end()
        while end < len(source):
            char = source[end]
            if char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
            elif char == ';' and depth == 0:
                break
            end += 1
        position = end + 1
    result.append(source[position:])
    return FIELD_OPTIONS.sub('', ''.join(result))


def split_blocks(source: str) -> Tuple[List[str], Dict[str, Tuple[str, str]]]:
    """
    Splits a proto file into its top-level statements and its top-level
    `message`, `enum` and `service` blocks (name -> (kind, text)).
    """
    statements: List[str] = []
    blocks: Dict[str, Tuple[str, str]] = {}
    position = 0
    while position < len(source):
        matched = BLOCK_START.search(source, position)
        head = source[position:matched.start() if matched else len(source)]
        statements.extend(s.strip() + ';' for s in head.split(';') if s.strip())
        if matched is None:
            break
        depth = 0
        end = matched.end() - 1
        while True:
            if source[end] == '{':
                depth += 1
            elif source[end] == '}':
                depth -= 1
                if depth == 0:
                    break
            end += 1
        kind, name = matched.groups()
        blocks[name] = (kind, source[matched.start():end + 1])
        position = end + 1
    return statements, blocks


def tidy(block: str) -> str:
    lines = [line.rstrip() for line in block.splitlines()]
    compacted: List[str] = []
    for line in lines:
        if not line and (not compacted or not compacted[-1] or compacted[-1].endswith('{')):
            continue
        compacted.append(line)
    return '\n'.join(compacted)


def prune_service(name: str, block: str, keep: Sequence[str]) -> Tuple[str, Set[str]]:
    rpcs: Dict[str, str] = {}
    referenced: Set[str] = set()
    for matched in RPC.finditer(block):
        rpc, in_stream, in_type, out_stream, out_type = matched.groups()
        if rpc not in keep:
            continue
        rpcs[rpc] = (
            f'  rpc {rpc}({in_stream or ""}{in_type}) '
            f'returns ({out_stream or ""}{out_type}) {{}}'
        )
        referenced.update((in_type, out_type))
    missing = set(keep) - rpcs.keys()
    if missing:
        raise SystemExit(f'service {name} has no rpc {", ".join(sorted(missing))}')
    body = '\n'.join(rpcs[rpc] for rpc in keep)
    return f'service {name} {{\n{body}\n}}', referenced


def referenced_types(block: str) -> Iterator[str]:
    for matched in FIELD_TYPE.finditer(block):
        yield matched.group(1)


def prune(filename: str, source: str, services: Dict[str, Sequence[str]]) -> str:
    source = LINE_COMMENT.sub('', BLOCK_COMMENT.sub('', source))
    statements, blocks = split_blocks(strip_options(source))
    package = PACKAGES[filename]

    kept: List[str] = []
    pending: List[str] = []
    if services:
        for service, rpcs in services.items():
            text, referenced = prune_service(service, blocks[service][1], rpcs)
            kept.append(text)
            pending.extend(referenced)
        wanted: Set[str] = set()
        while pending:
            name = pending.pop()
            if name.startswith(package + '.'):
                name = name[len(package) + 1:]
            if name in wanted or name not in blocks or blocks[name][0] == 'service':
                continue
            wanted.add(name)
            pending.extend(referenced_types(blocks[name][1]))
        # in upstream order
        kept.extend(tidy(text) for name, (kind, text) in blocks.items() if name in wanted)
    else:
        kept.extend(tidy(text) for kind, text in blocks.values() if kind != 'service')

    body = '\n\n'.join(kept)
    syntax: List[str] = []
    imports: List[str] = []
    for statement in statements:
        if statement.startswith(('syntax', 'package')):
            syntax.append(statement)
        elif (matched := IMPORT.match(statement)) is not None:
            target = Path(matched.group(1)).name
            if target in PACKAGES and f'{PACKAGES[target]}.' in body:
                imports.append(f'import "{IMPORT_PREFIX}/{target}";')
    parts = ['\n'.join(syntax)]
    if imports:
        parts.append('\n'.join(imports))
    parts.append(body)
    return '\n\n'.join(parts) + '\n'


def write_version(version: str):
    init_file = PACKAGE_ROOT / '__init__.py'
    source = init_file.read_text()
    init_file.write_text(VERSION.sub(f"ETCD_VERSION = '{version}'", source))


def main(version: str, repo_path: Optional[Path] = None, compile_modules: bool = False):
    folder_name = 'etcd-repo-' + ''.join(random.sample(string.ascii_letters, 8))
    did_clone = False
    if repo_path is None:
        did_clone = True
        repo_path = Path('/tmp') / folder_name
        exec_command(
            ['git', 'clone', 'https://github.com/etcd-io/etcd', folder_name],
            Path('/tmp'),
        )

    try:
        exec_command(['git', 'checkout', version], repo_path)
        for filename, (upstream, services) in PROTOS.items():
            print('pruning:', upstream)
            source = (repo_path / upstream).read_text()
            (PACKAGE_ROOT / filename).write_text(prune(filename, source, services))
        write_version(version)

        for stale in PACKAGE_ROOT.glob('*_pb2.py'):
            stale.unlink()
        if compile_modules:
            for filename in PROTOS:
                build_proto(PACKAGE_ROOT / filename, SOURCE_ROOT, [SOURCE_ROOT])
    finally:
        if did_clone:
            shutil.rmtree(repo_path)


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('version', type=str, help='target etcd version')
    parser.add_argument(
        '--repository-path', type=str,
        help='git repository folder path of etcd source code to use. If not supplied, '
             'this script will clone fresh repo on temporary directory and remove it upon exit.')
    parser.add_argument(
        '--compile', action='store_true',
        help='also write the *_pb2.py modules with grpc_tools.protoc instead of '
             'leaving them to be generated on import.')
    args = parser.parse_args()
    if (_path := args.repository_path) is not None:
        repo_path = Path(_path)
    else:
        repo_path = None

    main(args.version, repo_path, args.compile)
