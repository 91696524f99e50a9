# Copyright 2019 Facebook Inc. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from . import *
import argparse
import logging
import sys


def _parse_pairs(parser, items):
    pairs = []
    for item in items:
        if "=" not in item:
            parser.error(f"expected 'NAME=VALUE', got: {item}")
        name, value = item.rsplit("=", 1)
        try:
            pairs.append((name, int(value, 0)))
        except ValueError as e:
            parser.error(f"invalid value for {name}: {e}")
    return pairs


def _analyze(layout):
    enumSet = layout.enumSet
    runs = layout.runs

    print("Layout Analysis")
    print("=" * 70)
    print(f"Type {enumSet.typeName} ({enumSet.typ}): {len(enumSet)} entries")
    if enumSet.duplicates:
        print(f"Dropped {len(enumSet.duplicates)} duplicates:")
        for dropped, kept in enumSet.duplicates:
            print(f"  {dropped.name} = {dropped.value} (same value as {kept.name})")
    print()
    print(f"Found {len(runs)} runs:")
    print()
    print(f"{'#':<3} {'Min':>21} {'Max':>21} {'Entries':>8} {'Bytes':>6}")
    print("-" * 70)
    for i, run in enumerate(runs):
        print(
            f"{i+1:<3} {run.minV:>21} {run.maxV:>21} {len(run):>8} {len(run.blob.data):>6}"
        )
    print()
    print(f"Runs cost:   {runsCost(runs)}")
    print(f"Sparse cost: {sparseCost(enumSet.entries)}")
    print(f"Chosen layout: {layout.kind}")


def main(args=None):
    parser = argparse.ArgumentParser(
        prog="enumTab",
        description="Pack the constants of an enumeration into compact name tables.",
    )
    parser.add_argument(
        "data",
        nargs="*",
        help="NAME=VALUE constants in declaration order (reads from stdin if not provided)",
    )
    parser.add_argument(
        "-t",
        "--type",
        dest="type_name",
        required=True,
        help="name of the enumerated type, used in generated symbols and unknown values",
    )
    parser.add_argument(
        "--int-type",
        default="int",
        help="underlying integer type, e.g. i32, u8, uint16_t (default: int)",
    )
    parser.add_argument(
        "--trim-prefix",
        default="",
        help="remove this prefix from constant names",
    )
    parser.add_argument(
        "--from-string",
        action="store_true",
        help="also generate the name to value function",
    )
    parser.add_argument(
        "--language",
        choices=["c", "rust"],
        default="c",
        help="output language (default: c)",
    )
    # Keep --rust as a shorthand for --language=rust.
    parser.add_argument(
        "--rust", action="store_true", help="shorthand for --language=rust"
    )
    parser.add_argument(
        "--unsafe",
        action="store_true",
        help="use unsafe array access (Rust only)",
    )
    parser.add_argument(
        "--max-runs",
        type=int,
        default=None,
        help="most runs a range-dispatched table may have (default: %d)"
        % maxRunsBeforeSparse,
    )
    parser.add_argument(
        "--sparse-factor",
        type=float,
        default=None,
        help="keep range dispatch while its cost is at most this times the sparse "
        "table's (default: %s)" % sparseFactor,
    )
    parser.add_argument(
        "--name",
        default="",
        help="namespace prefix for generated symbols (default: none)",
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="show runs, costs and the chosen layout instead of generating code",
    )
    parser.add_argument(
        "-i",
        "--input",
        type=str,
        metavar="FILE",
        help="read constants from FILE (default: positional args or stdin)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        metavar="FILE",
        help="write output to FILE instead of stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="enable debug logging",
    )

    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.INFO,
        format="%(levelname)-7s %(name)s: %(message)s",
    )

    # Read constants from input file, positional args, or stdin
    if parsed.input:
        with open(parsed.input, "r") as f:
            parsed.data = f.read().strip().split()
        if not parsed.data:
            parser.error(f"no data in input file: {parsed.input}")
    elif not parsed.data:
        stdin_text = sys.stdin.read().strip()
        if not stdin_text:
            parser.error("no data provided (use positional args, -i, or stdin)")
        parsed.data = stdin_text.split()

    pairs = _parse_pairs(parser, parsed.data)

    try:
        layout = pack_enum(
            parsed.type_name,
            pairs,
            parsed.int_type,
            trim_prefix=parsed.trim_prefix,
            max_runs=parsed.max_runs,
            sparse_factor=parsed.sparse_factor,
        )
    except ValueError as e:
        parser.error(str(e))

    if parsed.analyze:
        _analyze(layout)
        return 0

    language = "rust" if parsed.rust else parsed.language
    lang = languageClasses[language](unsafe_array_access=parsed.unsafe)

    code = Code(parsed.name)
    layout.genCode(code, lang, from_string=parsed.from_string, private=False)

    if parsed.output:
        with open(parsed.output, "w") as f:
            code.print_code(language=lang, file=f)
    else:
        code.print_code(language=lang)

    return 0


if __name__ == "__main__":
    sys.exit(main())
