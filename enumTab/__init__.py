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

"""
Pack the constants of an enumerated type into compact name tables.

Overview
--------

Given the ``(name, value)`` constants of one integer enumeration, this
module builds the value→name mapping ("stringification") and, on
request, the name→value mapping back ("parsing"), choosing a table
layout that keeps the data small.

The work happens in three steps:

**Normalization**: ``normalize()`` validates the pairs against the
underlying integer type, keeps the first name declared for each value,
drops later duplicates, and sorts the survivors by value.

**Layout selection**: ``select_layout()`` splits the sorted values into
runs of consecutive integers and picks one of:

  - ``SingleLayout``: exactly one run.  All names live in one blob,
    sliced through an index of byte offsets after subtracting the
    run's first value.
  - ``MultiLayout``: a few runs, each with its own blob and index,
    dispatched by a range test per run.
  - ``SparseLayout``: a direct value→name table, for values too
    scattered to dispatch by range.

  Multi vs. Sparse is decided by a byte-size estimate and a ceiling on
  the number of runs; see the cost model constants below.

**Synthesis**: ``synthesize()`` turns a layout into two callable
accessor descriptions: ``StringAccessor`` (value→name) and
``ParseAccessor`` (name→value).  A value with no name is reported as
``TypeName(<decimal>)``.

Unsigned values are plain non-negative Python integers, so a type whose
constants wrap from the top of its range through zero (``253, 254, 0,
1, 2`` on ``u8``) simply sorts into two runs; nothing merges across the
wrap.

Code generation
---------------

The ``Code`` class accumulates name blobs, arrays and functions as they
are generated.  ``genCode()`` on a layout registers them in the Code
object, and ``Code.print_code()`` emits the declarations in the target
language.

The ``Language`` class hierarchy abstracts syntax differences between
C and Rust: type names, literals, declarations, range tests, slicing
and the shape of the sparse lookup.
"""

import sys
import logging
import threading
import collections
from functools import partial
from math import log2
from typing import Union, List, Dict, Optional, Any, Tuple, TextIO, Iterable


__all__ = [
    "MalformedInputError",
    "Entry",
    "NameBlob",
    "EnumSet",
    "normalize",
    "Run",
    "split_runs",
    "SingleLayout",
    "MultiLayout",
    "SparseLayout",
    "Layout",
    "select_layout",
    "runsCost",
    "sparseCost",
    "runOverhead",
    "mapEntryOverhead",
    "sparseFactor",
    "maxRunsBeforeSparse",
    "pack_enum",
    "SparseTable",
    "StringAccessor",
    "ParseAccessor",
    "synthesize",
    "PackResult",
    "pack_enums",
    "Code",
    "Language",
    "LanguageC",
    "LanguageRust",
    "languages",
    "languageClasses",
    "binaryBitsFor",
    "typeWidth",
    "typeAbbr",
    "normalizeType",
    "typeRange",
    "wrapValue",
]

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


class MalformedInputError(ValueError):
    """The entries of a type are inconsistent with its declaration."""


# Integer types.
#
# Types are carried around as abbreviations: i8 i16 i32 i64 u8 u16 u32
# u64.  normalizeType() accepts C and Go spellings as well.

typeAliases = {
    "int": "i64",
    "uint": "u64",
    "uintptr": "u64",
    "byte": "u8",
    "rune": "i32",
}


def binaryBitsFor(minV, maxV):
    """Returns the smallest power-of-two bit width that can store values
    in [minV, maxV].

    >>> binaryBitsFor(0, 0)
    0
    >>> binaryBitsFor(0, 6)
    4
    >>> binaryBitsFor(0, 100)
    8
    >>> binaryBitsFor(0, 300)
    16
    """

    if minV > maxV:
        raise ValueError("minV (%d) > maxV (%d)" % (minV, maxV))

    if 0 <= minV and maxV <= 0:
        return 0
    if 0 <= minV and maxV <= 1:
        return 1
    if 0 <= minV and maxV <= 3:
        return 2
    if 0 <= minV and maxV <= 15:
        return 4

    if 0 <= minV and maxV <= 255:
        return 8
    if -128 <= minV and maxV <= 127:
        return 8

    if 0 <= minV and maxV <= 65535:
        return 16
    if -32768 <= minV and maxV <= 32767:
        return 16

    if 0 <= minV and maxV <= 4294967295:
        return 32
    if -2147483648 <= minV and maxV <= 2147483647:
        return 32

    if 0 <= minV and maxV <= 18446744073709551615:
        return 64
    if -9223372036854775808 <= minV and maxV <= 9223372036854775807:
        return 64

    raise ValueError("values out of range: [%d, %d]" % (minV, maxV))


def typeWidth(typ):
    """
    >>> typeWidth('int8_t')
    8
    >>> typeWidth('uint32_t')
    32
    >>> typeWidth('u32')
    32
    """
    return int("".join([c for c in typ if c.isdigit()]))


def typeAbbr(typ):
    """
    >>> typeAbbr('int8_t')
    'i8'
    >>> typeAbbr('uint32_t')
    'u32'
    """
    return typ[0] + str(typeWidth(typ))


def normalizeType(typ):
    """Reduce an integer type spelling to its abbreviation.

    >>> normalizeType('int')
    'i64'
    >>> normalizeType('uint8_t')
    'u8'
    >>> normalizeType('int16')
    'i16'
    >>> normalizeType('u32')
    'u32'
    """
    if not isinstance(typ, str):
        raise MalformedInputError("integer type must be a string, got %r" % (typ,))
    typ = typeAliases.get(typ, typ)
    if typ[:1] not in ("i", "u") or not any(c.isdigit() for c in typ):
        raise MalformedInputError("unknown integer type: %r" % typ)
    abbr = typeAbbr(typ)
    if typeWidth(abbr) not in (8, 16, 32, 64):
        raise MalformedInputError("unsupported integer width: %r" % typ)
    return abbr


def typeRange(typ):
    """
    >>> typeRange('u8')
    (0, 255)
    >>> typeRange('i8')
    (-128, 127)
    """
    width = typeWidth(typ)
    if typ[0] == "u":
        return 0, (1 << width) - 1
    return -(1 << (width - 1)), (1 << (width - 1)) - 1


def wrapValue(value, typ):
    """Reduce ``value`` into the range of ``typ`` the way a cast would.

    >>> wrapValue(-1, 'u8')
    255
    >>> wrapValue(200, 'i8')
    -56
    >>> wrapValue(-3, 'i64')
    -3
    """
    width = typeWidth(typ)
    value &= (1 << width) - 1
    if typ[0] == "i" and value >> (width - 1):
        value -= 1 << width
    return value


# Normalization


Entry = collections.namedtuple("Entry", ["name", "value", "order"])


class NameBlob:
    """Names concatenated into one UTF-8 byte string, plus byte offsets.

    ``index`` has one more element than there are names; name ``i`` is
    ``data[index[i]:index[i+1]]``.

    >>> blob = NameBlob(["One", "Two", "Three"])
    >>> blob.text
    'OneTwoThree'
    >>> blob.index
    [0, 3, 6, 11]
    >>> blob[2]
    'Three'
    """

    def __init__(self, names):
        encoded = [name.encode("utf-8") for name in names]
        self.data = b"".join(encoded)
        self.index = [0]
        for e in encoded:
            self.index.append(self.index[-1] + len(e))

    @property
    def text(self):
        return self.data.decode("utf-8")

    def __len__(self):
        return len(self.index) - 1

    def __getitem__(self, i):
        return self.data[self.index[i] : self.index[i + 1]].decode("utf-8")

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]


class EnumSet:
    """The normalized constants of one enumerated type.

    ``entries`` holds one Entry per distinct value, sorted by value.
    ``duplicates`` lists ``(dropped, kept)`` pairs for constants whose
    value was already taken by an earlier declaration; those are never
    emitted.
    """

    def __init__(self, typeName, typ, entries, duplicates=()):
        self.typeName = typeName
        self.typ = typ
        self.entries = entries
        self.duplicates = list(duplicates)

    @property
    def signed(self):
        return self.typ[0] == "i"

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __repr__(self):
        return "%s(%r, %r, %d entries)" % (
            self.__class__.__name__,
            self.typeName,
            self.typ,
            len(self.entries),
        )


def normalize(
    typeName: str,
    pairs: Iterable[Tuple[str, int]],
    typ: str = "int",
    trim_prefix: str = "",
) -> EnumSet:
    """Validate and deduplicate the ``(name, value)`` pairs of one type.

    Pairs are scanned in declaration order.  The first name seen for a
    value wins; later constants with the same value are dropped.  The
    survivors are sorted by value.

    >>> s = normalize("Number", [("A", 1), ("B", 2), ("C", 1)])
    >>> [(e.name, e.value) for e in s]
    [('A', 1), ('B', 2)]
    >>> [(d.name, k.name) for d, k in s.duplicates]
    [('C', 'A')]

    Raises:
        MalformedInputError: If a pair is not a string name with an
            integer value inside the range of ``typ``, or a name is
            declared twice with different values.
    """
    if not isinstance(typeName, str) or not typeName:
        raise MalformedInputError("type name must be a non-empty string")
    typ = normalizeType(typ)
    minV, maxV = typeRange(typ)

    byValue = {}
    byName = {}
    duplicates = []
    for order, pair in enumerate(pairs):
        try:
            name, value = pair
        except (TypeError, ValueError):
            raise MalformedInputError(
                "%s: entry %d is not a (name, value) pair: %r" % (typeName, order, pair)
            )
        if not isinstance(name, str) or not name:
            raise MalformedInputError("%s: entry %d has no name" % (typeName, order))
        try:
            name.encode("utf-8")
        except UnicodeEncodeError as e:
            raise MalformedInputError(
                "%s: name %r is not valid UTF-8: %s" % (typeName, name, e.reason)
            )
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedInputError(
                "%s: %s has non-integer value %r" % (typeName, name, value)
            )
        if not minV <= value <= maxV:
            raise MalformedInputError(
                "%s: %s = %d out of range for %s [%d, %d]"
                % (typeName, name, value, typ, minV, maxV)
            )

        if trim_prefix and name.startswith(trim_prefix):
            name = name[len(trim_prefix) :]
            if not name:
                raise MalformedInputError(
                    "%s: entry %d is empty after trimming %r"
                    % (typeName, order, trim_prefix)
                )

        seen = byName.setdefault(name, value)
        if seen != value:
            raise MalformedInputError(
                "%s: %s declared with values %d and %d" % (typeName, name, seen, value)
            )

        entry = Entry(name, value, order)
        kept = byValue.get(value)
        if kept is not None:
            logger.debug(
                "%s: dropping %s, duplicate of %s (%d)",
                typeName,
                name,
                kept.name,
                value,
            )
            duplicates.append((entry, kept))
            continue
        byValue[value] = entry

    entries = sorted(byValue.values(), key=lambda e: e.value)
    return EnumSet(typeName, typ, entries, duplicates)


# Layout selection


class Run:
    """A maximal stretch of consecutive values, ``minV`` through ``maxV``,
    with the names of its entries packed into one blob."""

    def __init__(self, entries):
        self.entries = list(entries)
        self.minV = self.entries[0].value
        self.maxV = self.entries[-1].value
        self.blob = NameBlob(e.name for e in self.entries)

    def __len__(self):
        return len(self.entries)

    def __contains__(self, value):
        return self.minV <= value <= self.maxV

    def name(self, value):
        return self.blob[value - self.minV]

    def __repr__(self):
        return "Run[%d..%d]" % (self.minV, self.maxV)


def split_runs(entries):
    """Split value-sorted entries into maximal runs of consecutive values.

    >>> split_runs([Entry("a", 2, 0), Entry("b", 3, 1), Entry("c", 5, 2)])
    [Run[2..3], Run[5..5]]
    """
    runs = []
    current = []
    for entry in entries:
        if current and entry.value != current[-1].value + 1:
            runs.append(Run(current))
            current = []
        current.append(entry)
    if current:
        runs.append(Run(current))
    return runs


# Cost model constants.  They tune where the Multi layout gives way to
# the Sparse one; sizes are rough byte counts of generated data + code.
#
# runOverhead:          one range test, offset and slice per run.
# mapEntryOverhead:     one key plus slice bounds per sparse entry.
# sparseFactor:         Multi is kept while its cost is at most this
#                       many times the Sparse cost.
# maxRunsBeforeSparse:  past this many runs the dispatch chain is too
#                       long regardless of byte count.

runOverhead = 24
mapEntryOverhead = 16
sparseFactor = 1.5
maxRunsBeforeSparse = 10


def indexBytes(size):
    """Bytes per index entry for a blob of ``size`` bytes.

    >>> indexBytes(50)
    1
    >>> indexBytes(300)
    2
    """
    return max(8, binaryBitsFor(0, size)) // 8


def runsCost(runs):
    cost = 0
    for run in runs:
        size = len(run.blob.data)
        cost += runOverhead + size + (len(run) + 1) * indexBytes(size)
    return cost


def sparseCost(entries):
    size = sum(len(e.name.encode("utf-8")) for e in entries)
    return len(entries) * mapEntryOverhead + size


class Layout:
    """Base for the three table layouts.

    ``runs`` is the run decomposition the layout was chosen from, kept
    on every layout (Sparse included) for inspection.
    """

    kind = None

    def __init__(self, enumSet, runs):
        self.enumSet = enumSet
        self.runs = runs

    @property
    def typeName(self):
        return self.enumSet.typeName

    @property
    def typ(self):
        return self.enumSet.typ

    def __repr__(self):
        return "%s%s" % (
            self.__class__.__name__,
            (self.typeName, len(self.runs), self.cost),
        )


class RunsLayout(Layout):
    """Single and Multi: one blob and one index per run, dispatched by
    range tests in ascending order."""

    @property
    def cost(self):
        return runsCost(self.runs)

    def describe(self):
        return {
            "type": self.typeName,
            "typ": self.typ,
            "kind": self.kind,
            "runs": tuple(
                (run.minV, run.maxV, run.blob.text, tuple(run.blob.index))
                for run in self.runs
            ),
        }

    def genCode(self, code, language="c", *, from_string=False, private=True):
        """Register blobs, index arrays and accessor functions in ``code``.

        Runs of more than one value get an index array and an offset
        subtraction; singleton runs return their blob whole.

        Returns ``(stringFunc, parseFunc)``; ``parseFunc`` is None
        unless ``from_string`` is set.
        """
        if isinstance(language, str):
            language = languages[language]
        typeName, typ = self.typeName, self.typ

        body = []
        for n, run in enumerate(self.runs):
            suffix = "" if self.kind == "single" else "_%d" % n
            blobName = code.addString(
                language.static_name(code.nameFor("%s_name%s" % (typeName, suffix))),
                run.blob.text,
            )
            cond = language.range_test("i", run.minV, run.maxV, typ)
            if len(run) == 1:
                body.extend(language.if_block(cond, [language.return_name(blobName)]))
                continue
            indexName = code.addArray(
                language.type_for(0, len(run.blob.data)),
                language.static_name(code.nameFor("%s_index%s" % (typeName, suffix))),
                run.blob.index,
            )
            body.extend(
                language.if_block(
                    cond,
                    [
                        language.let_index("k", language.offset_index("i", run.minV, typ)),
                        language.return_slice(blobName, indexName, "k"),
                    ],
                )
            )
        body.append(language.return_stmt(language.unknown_value(typeName, "i", typ)))

        retType, args = language.string_signature(typ)
        stringFunc = code.addFunction(
            retType,
            language.function_name(code.nameFor("%s_string" % typeName)),
            args,
            body,
            private=private,
        )
        if not from_string:
            return stringFunc, None

        body = []
        if self.runs:
            longest = max(
                max(b - a for a, b in zip(run.blob.index, run.blob.index[1:]))
                for run in self.runs
            )
            body.extend(language.scan_prologue(longest))
        for run in self.runs:
            body.extend(language.scan_run(stringFunc, run.minV, run.maxV, typ))
        body.append(language.return_stmt(language.not_found()))

        retType, args = language.parse_signature(typ)
        parseFunc = code.addFunction(
            retType,
            language.function_name(code.nameFor("%s_from_string" % typeName)),
            args,
            body,
            private=private,
        )
        return stringFunc, parseFunc


class SingleLayout(RunsLayout):
    """All values form one run; index after subtracting its first value."""

    kind = "single"

    def __init__(self, enumSet, runs):
        if len(runs) != 1:
            raise ValueError("single layout needs exactly one run, got %d" % len(runs))
        RunsLayout.__init__(self, enumSet, runs)

    @property
    def run(self):
        return self.runs[0]


class MultiLayout(RunsLayout):
    """Several runs, each with its own blob, index and offset."""

    kind = "multi"


class SparseLayout(Layout):
    """Direct value→name table over one global blob.

    The table itself is a ``SparseTable`` built on first use.
    """

    kind = "sparse"

    def __init__(self, enumSet, runs):
        Layout.__init__(self, enumSet, runs)
        self.blob = NameBlob(e.name for e in enumSet.entries)
        self.values = [e.value for e in enumSet.entries]
        self.table = SparseTable(self.blob, self.values)

    @property
    def cost(self):
        return sparseCost(self.enumSet.entries)

    def describe(self):
        index = self.blob.index
        return {
            "type": self.typeName,
            "typ": self.typ,
            "kind": self.kind,
            "name": self.blob.text,
            "map": tuple(
                (v, index[k], index[k + 1]) for k, v in enumerate(self.values)
            ),
        }

    def genCode(self, code, language="c", *, from_string=False, private=True):
        """Register the blob, the sorted value and index arrays, and the
        accessor functions in ``code``.  The lookup itself is shaped by
        the language: binary search in C, a once-built map in Rust."""
        if isinstance(language, str):
            language = languages[language]
        typeName, typ = self.typeName, self.typ

        names = {
            "type": typeName,
            "count": len(self.values),
            "name": code.addString(
                language.static_name(code.nameFor("%s_name" % typeName)),
                self.blob.text,
            ),
            "values": code.addArray(
                language.type_name(typ),
                language.static_name(code.nameFor("%s_values" % typeName)),
                [language.int_literal(v, typ) for v in self.values],
            ),
            "index": code.addArray(
                language.type_for(0, len(self.blob.data)),
                language.static_name(code.nameFor("%s_index" % typeName)),
                self.blob.index,
            ),
        }
        names["map"] = language.sparse_helpers(code, names, typ)

        retType, args = language.string_signature(typ)
        stringFunc = code.addFunction(
            retType,
            language.function_name(code.nameFor("%s_string" % typeName)),
            args,
            language.sparse_string_body(names, typ),
            private=private,
        )
        if not from_string:
            return stringFunc, None

        retType, args = language.parse_signature(typ)
        parseFunc = code.addFunction(
            retType,
            language.function_name(code.nameFor("%s_from_string" % typeName)),
            args,
            language.sparse_parse_body(names, typ),
            private=private,
        )
        return stringFunc, parseFunc


def select_layout(
    enumSet: EnumSet,
    max_runs: Optional[int] = None,
    sparse_factor: Optional[float] = None,
) -> Layout:
    """Pick the table layout for a normalized set.

    Args:
        enumSet: Output of ``normalize()``.
        max_runs: Largest run count a Multi layout may have. Defaults to
            ``maxRunsBeforeSparse``.
        sparse_factor: Multi is chosen while its cost is at most this
            times the Sparse cost. Defaults to ``sparseFactor``.

    Returns:
        A SingleLayout for one run, otherwise a MultiLayout or a
        SparseLayout.  An empty set yields a MultiLayout with no runs.
    """
    if max_runs is None:
        max_runs = maxRunsBeforeSparse
    if sparse_factor is None:
        sparse_factor = sparseFactor
    if max_runs < 0:
        raise ValueError("max_runs must be non-negative, got %r" % (max_runs,))
    if sparse_factor < 0:
        raise ValueError("sparse_factor must be non-negative, got %r" % (sparse_factor,))

    runs = split_runs(enumSet.entries)
    if len(runs) == 1:
        layout = SingleLayout(enumSet, runs)
    else:
        multi = MultiLayout(enumSet, runs)
        sparse = SparseLayout(enumSet, runs)
        if len(runs) <= max_runs and multi.cost <= sparse.cost * sparse_factor:
            layout = multi
        else:
            layout = sparse
    logger.debug(
        "%s: %d entries in %d runs, %s layout (cost %d)",
        enumSet.typeName,
        len(enumSet),
        len(runs),
        layout.kind,
        layout.cost,
    )
    return layout


def pack_enum(
    typeName: str,
    pairs: Iterable[Tuple[str, int]],
    typ: str = "int",
    *,
    trim_prefix: str = "",
    max_runs: Optional[int] = None,
    sparse_factor: Optional[float] = None,
) -> Layout:
    """Normalize the constants of one type and pick their table layout.

    >>> pack_enum("Day", [("Monday", 0), ("Tuesday", 1)]).kind
    'single'
    >>> pack_enum("Gap", [("Two", 2), ("Three", 3), ("Five", 5)]).runs
    [Run[2..3], Run[5..5]]
    """
    enumSet = normalize(typeName, pairs, typ, trim_prefix=trim_prefix)
    return select_layout(enumSet, max_runs=max_runs, sparse_factor=sparse_factor)


# Accessor synthesis


class SparseTable:
    """Value→name dict built from a blob on first use.

    ``get()`` may be called from any number of threads.  The dict is
    built exactly once under ``_lock`` and published only when complete;
    after that it is read without locking and never modified.
    """

    def __init__(self, blob, values):
        self.blob = blob
        self.values = values
        self.builds = 0
        self._map = None
        self._lock = threading.Lock()

    @property
    def populated(self):
        return self._map is not None

    def get(self) -> Dict[int, str]:
        table = self._map
        if table is None:
            with self._lock:
                if self._map is None:
                    self._map = self._populate()
                table = self._map
        return table

    def _populate(self):
        self.builds += 1
        logger.debug("populating sparse table of %d names", len(self.values))
        return {v: self.blob[k] for k, v in enumerate(self.values)}


class StringAccessor:
    """Value→name accessor.

    For Single and Multi layouts ``branches`` lists the runs in ascending
    order: a value inside ``[minV, maxV]`` of a branch is offset by
    ``minV`` and sliced out of that branch's blob.  For the Sparse
    layout ``table`` is consulted instead.  Anything else is formatted
    by ``unknown()``.

    The argument is first wrapped into the range of the type, so an
    unsigned type reports ``-1`` as its maximum value.
    """

    def __init__(self, layout):
        self.typeName = layout.typeName
        self.typ = layout.typ
        self.kind = layout.kind
        if layout.kind == "sparse":
            self.branches = []
            self.table = layout.table
        else:
            self.branches = list(layout.runs)
            self.table = None

    def __call__(self, value: int) -> str:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(
                "%s value must be an integer, got %r" % (self.typeName, value)
            )
        value = wrapValue(value, self.typ)
        if self.table is not None:
            name = self.table.get().get(value)
            if name is not None:
                return name
            return self.unknown(value)
        for run in self.branches:
            if value in run:
                return run.name(value)
        return self.unknown(value)

    def unknown(self, value):
        return "%s(%d)" % (self.typeName, value)

    def describe(self):
        """Branches are ``(minV, maxV, offset, blob text, blob index)``;
        the sparse form names the table's blob and sorted values."""
        if self.table is not None:
            return {
                "kind": self.kind,
                "lookup": "table",
                "name": self.table.blob.text,
                "values": tuple(self.table.values),
                "unknown": self.typeName,
            }
        return {
            "kind": self.kind,
            "branches": tuple(
                (run.minV, run.maxV, run.minV, run.blob.text, tuple(run.blob.index))
                for run in self.branches
            ),
            "unknown": self.typeName,
        }


class ParseAccessor:
    """Name→value accessor.

    Scans every value of every run in ascending order through the
    value→name accessor, or the pairs of the sparse table, and returns
    ``(value, True)`` for the first exact match, ``(0, False)`` if
    nothing matches.  The scan is linear on purpose.
    """

    def __init__(self, layout, stringer):
        self.stringer = stringer
        if layout.kind == "sparse":
            self.table = layout.table
            self.spans = []
        else:
            self.table = None
            self.spans = [(run.minV, run.maxV) for run in layout.runs]

    def __call__(self, name: str) -> Tuple[int, bool]:
        if self.table is not None:
            for value, s in self.table.get().items():
                if s == name:
                    return value, True
            return 0, False
        for lo, hi in self.spans:
            for value in range(lo, hi + 1):
                if self.stringer(value) == name:
                    return value, True
        return 0, False

    def describe(self):
        if self.table is not None:
            return {"scan": "table"}
        return {"scan": tuple(self.spans)}


def synthesize(layout, from_string=False):
    """Build the accessors of a layout.

    Returns ``(stringer, parser)``; ``parser`` is None unless
    ``from_string`` is set.

    >>> stringer, parser = synthesize(pack_enum("Mood", [("Sad", -1), ("Ok", 0)]), True)
    >>> stringer(-1), stringer(5)
    ('Sad', 'Mood(5)')
    >>> parser("Ok"), parser("ok")
    ((0, True), (0, False))
    """
    stringer = StringAccessor(layout)
    parser = ParseAccessor(layout, stringer) if from_string else None
    return stringer, parser


class PackResult(
    collections.namedtuple(
        "PackResult", ["typeName", "layout", "stringer", "parser", "error"]
    )
):
    """Outcome for one type of ``pack_enums()``."""

    __slots__ = ()

    @property
    def ok(self):
        return self.error is None


def pack_enums(
    types: Iterable[Tuple[str, str, Iterable[Tuple[str, int]]]],
    *,
    from_string: bool = False,
    trim_prefix: str = "",
    max_runs: Optional[int] = None,
    sparse_factor: Optional[float] = None,
) -> List[PackResult]:
    """Pack several types, one result per type.

    Args:
        types: ``(typeName, typ, pairs)`` triples.

    A type whose entries are malformed does not stop the others; its
    result carries the MalformedInputError and the caller decides
    whether to skip it or abort.
    """
    results = []
    for typeName, typ, pairs in types:
        try:
            layout = pack_enum(
                typeName,
                pairs,
                typ,
                trim_prefix=trim_prefix,
                max_runs=max_runs,
                sparse_factor=sparse_factor,
            )
        except MalformedInputError as e:
            logger.warning("skipping %s: %s", typeName, e)
            results.append(PackResult(typeName, None, None, None, e))
            continue
        stringer, parser = synthesize(layout, from_string)
        results.append(PackResult(typeName, layout, stringer, parser, None))
    return results


# Code generation


class Language:
    """Base class for target-language code generation backends.

    Subclasses (LanguageC, LanguageRust) override syntax-specific methods.
    Default instances live in the ``languages`` dict; ``languageClasses``
    holds the classes for custom instantiation.
    """

    def __init__(self, *, unsafe_array_access=False):
        self.unsafe_array_access = unsafe_array_access

    def print_string(self, name, text, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        print("%s = %s;" % (self.declare_string(linkage, name), self.string_literal(text)))

    def print_array(self, name, array, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        decl = self.declare_array(linkage, array.typ, name, len(array.values))
        print(decl, "=")
        print(self.array_start)
        w = max((len(str(v)) for v in array.values), default=1)
        n = 1 << int(round(log2(78 / (w + 1))))
        if (w + 2) * n <= 78:
            w += 1
        for i in range(0, len(array.values), n):
            line = array.values[i : i + n]
            print("  " + "".join("%*s," % (w, v) for v in line))
        print(self.array_end)

    def print_function(self, name, function, *, print=print):
        linkage = (
            self.private_function_linkage
            if function.private
            else self.public_function_linkage
        )
        decl = self.declare_function(linkage, function.retType, name, function.args)
        print(decl)
        print(self.function_start)
        for line in function.body:
            print("  %s" % line)
        print(self.function_end)

    def static_name(self, name):
        return name

    def function_name(self, name):
        return name

    def array_index(self, name, index):
        return "%s[%s]" % (name, index)

    def range_test(self, var, lo, hi, typ):
        """Condition for ``lo <= var <= hi``; bounds at the limits of
        ``typ`` are left out, and None means always true."""
        if lo == hi:
            return "%s == %s" % (var, self.int_literal(lo, typ))
        minV, maxV = typeRange(typ)
        tests = []
        if lo > minV:
            tests.append("%s <= %s" % (self.int_literal(lo, typ), var))
        if hi < maxV:
            tests.append("%s <= %s" % (var, self.int_literal(hi, typ)))
        return " && ".join(tests) or None

    def if_block(self, cond, lines):
        if cond is None:
            return list(lines)
        return self.block_open("if", cond) + ["  " + l for l in lines] + ["}"]


class LanguageC(Language):
    name = "c"
    private_array_linkage = "static const"
    public_array_linkage = "extern const"
    private_function_linkage = "static inline"
    public_function_linkage = "extern inline"
    array_start = "{"
    array_end = "};"
    function_start = "{"
    function_end = "}"

    def print_preamble(self, *, print=print):
        print("#include <stdint.h>")
        print("#include <inttypes.h>")
        print("#include <stdio.h>")
        print("#include <string.h>")
        print()

    def string_literal(self, text):
        out = []
        for b in text.encode("utf-8"):
            c = chr(b)
            if c in '"\\?':
                out.append("\\" + c)
            elif 0x20 <= b < 0x7F:
                out.append(c)
            else:
                out.append("\\%03o" % b)
        return '"%s"' % "".join(out)

    def declare_string(self, linkage, name):
        if linkage:
            linkage += " "
        return "%schar %s[]" % (linkage, name)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s %s[%d]" % (linkage, typ, name, size)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join(
            ("%s%s" if t.endswith("*") else "%s %s") % (t, n) for t, n in args
        )
        return "%s%s %s (%s)" % (linkage, retType, name, args)

    def type_name(self, typ):
        assert typ[0] in "iu"
        signed = "" if typ[0] == "i" else "u"
        size = typeWidth(typ)
        return "%sint%s_t" % (signed, size)

    def type_for(self, minV, maxV):
        if 0 <= minV and maxV <= 255:
            return "uint8_t"
        if 0 <= minV and maxV <= 65535:
            return "uint16_t"
        if 0 <= minV and maxV <= 4294967295:
            return "uint32_t"
        return "uint64_t"

    def int_literal(self, value, typ):
        if typ[0] == "u":
            if typeWidth(typ) == 64:
                return "%dULL" % value
            if typeWidth(typ) == 32:
                return "%du" % value
            return "%d" % value
        if value == -(1 << 63):
            return "INT64_MIN"
        if -(1 << 31) < value < (1 << 31):
            return "%d" % value
        return "%dLL" % value

    def block_open(self, keyword, cond):
        return ["%s (%s)" % (keyword, cond), "{"]

    def let_index(self, var, expr):
        return "size_t %s = %s;" % (var, expr)

    def offset_index(self, var, lo, typ):
        if lo == 0:
            return "(size_t) %s" % var
        return "(size_t) ((uint64_t) %s - (uint64_t) %s)" % (var, self.int_literal(lo, typ))

    def _print_slice(self, blobName, indexName, k):
        start = self.array_index(indexName, k)
        end = self.array_index(indexName, "%s+1" % k)
        return 'snprintf (buf, size, "%%.*s", (int) (%s - %s), %s + %s)' % (
            end,
            start,
            blobName,
            start,
        )

    def return_slice(self, blobName, indexName, k):
        return "return %s;" % self._print_slice(blobName, indexName, k)

    def return_name(self, blobName):
        return 'return snprintf (buf, size, "%%s", %s);' % blobName

    def unknown_value(self, typeName, var, typ):
        if typ[0] == "u":
            return 'snprintf (buf, size, "%s(%%" PRIu64 ")", (uint64_t) %s)' % (
                typeName,
                var,
            )
        return 'snprintf (buf, size, "%s(%%" PRId64 ")", (int64_t) %s)' % (typeName, var)

    def string_signature(self, typ):
        return "int", ((self.type_name(typ), "i"), ("char *", "buf"), ("size_t", "size"))

    def parse_signature(self, typ):
        return "int", (("const char *", "s"), ("%s *" % self.type_name(typ), "v"))

    def scan_prologue(self, longest):
        return ["char buf[%d];" % (longest + 1)]

    def scan_run(self, stringFunc, lo, hi, typ):
        ctype = self.type_name(typ)
        if lo == 0:
            value = "(%s) k" % ctype
        else:
            value = "(%s) ((uint64_t) %s + k)" % (ctype, self.int_literal(lo, typ))
        return [
            "for (size_t k = 0; k < %d; k++)" % (hi - lo + 1),
            "{",
            "  %s u = %s;" % (ctype, value),
            "  %s (u, buf, sizeof buf);" % stringFunc,
            "  if (strcmp (buf, s) == 0)",
            "  {",
            "    *v = u;",
            "    return 1;",
            "  }",
            "}",
        ]

    def not_found(self):
        return "0"

    def return_stmt(self, expr):
        return "return %s;" % expr

    def sparse_helpers(self, code, names, typ):
        # Static sorted arrays; nothing to build at run time.
        return None

    def sparse_string_body(self, names, typ):
        values = names["values"]
        count = names["count"]
        return [
            "size_t lo = 0, hi = %d;" % count,
            "while (lo < hi)",
            "{",
            "  size_t mid = lo + (hi - lo) / 2;",
            "  if (%s < i)" % self.array_index(values, "mid"),
            "    lo = mid + 1;",
            "  else",
            "    hi = mid;",
            "}",
            "if (lo < %d && %s == i)" % (count, self.array_index(values, "lo")),
            "  return %s;" % self._print_slice(names["name"], names["index"], "lo"),
            self.return_stmt(self.unknown_value(names["type"], "i", typ)),
        ]

    def sparse_parse_body(self, names, typ):
        blobName, indexName = names["name"], names["index"]
        start = self.array_index(indexName, "k")
        end = self.array_index(indexName, "k+1")
        return [
            "size_t n = strlen (s);",
            "for (size_t k = 0; k < %d; k++)" % names["count"],
            "{",
            "  if (n == (size_t) (%s - %s) && memcmp (s, %s + %s, n) == 0)"
            % (end, start, blobName, start),
            "  {",
            "    *v = %s;" % self.array_index(names["values"], "k"),
            "    return 1;",
            "  }",
            "}",
            "return 0;",
        ]


class LanguageRust(Language):
    name = "rust"
    private_array_linkage = "static"
    public_array_linkage = "pub(crate) static"
    private_function_linkage = ""
    public_function_linkage = "pub(crate)"
    array_start = "["
    array_end = "];"
    function_start = "{"
    function_end = "}"

    cow = "std::borrow::Cow"

    def print_preamble(self, *, print=print):
        pass

    def print_function(self, name, function, *, print=print):
        print("#[inline]")
        super().print_function(name, function, print=print)

    def static_name(self, name):
        return name.upper()

    def function_name(self, name):
        return name.lower()

    def string_literal(self, text):
        out = []
        for c in text:
            if c in '"\\':
                out.append("\\" + c)
            elif c.isprintable():
                out.append(c)
            else:
                out.append("\\u{%x}" % ord(c))
        return '"%s"' % "".join(out)

    def declare_string(self, linkage, name):
        if linkage:
            linkage += " "
        return "%s%s: &str" % (linkage, name)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s: [%s; %d]" % (linkage, name, typ, size)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join("%s: %s" % (n, t) for t, n in args)
        return "%sfn %s (%s) -> %s" % (linkage, name, args, retType)

    def type_name(self, typ):
        assert typ[0] in "iu"
        return "%s%s" % (typ[0], typeWidth(typ))

    def type_for(self, minV, maxV):
        if 0 <= minV and maxV <= 255:
            return "u8"
        if 0 <= minV and maxV <= 65535:
            return "u16"
        if 0 <= minV and maxV <= 4294967295:
            return "u32"
        return "u64"

    def int_literal(self, value, typ):
        return "%d%s" % (value, self.type_name(typ))

    def as_usize(self, expr):
        return "(%s) as usize" % expr

    def array_index(self, name, index):
        if self.unsafe_array_access:
            return "unsafe { *(%s.get_unchecked(%s)) }" % (name, index)
        return "%s[%s]" % (name, index)

    def block_open(self, keyword, cond):
        return ["%s %s {" % (keyword, cond)]

    def let_index(self, var, expr):
        return "let %s = %s;" % (var, expr)

    def offset_index(self, var, lo, typ):
        if lo == 0:
            return "%s as usize" % var
        return "(%s as u64).wrapping_sub((%s) as u64) as usize" % (
            var,
            self.int_literal(lo, typ),
        )

    def _slice(self, blobName, indexName, k):
        start = self.as_usize(self.array_index(indexName, k))
        end = self.as_usize(self.array_index(indexName, "%s + 1" % k))
        return "&%s[%s..%s]" % (blobName, start, end)

    def return_slice(self, blobName, indexName, k):
        return "return %s::Borrowed(%s);" % (self.cow, self._slice(blobName, indexName, k))

    def return_name(self, blobName):
        return "return %s::Borrowed(%s);" % (self.cow, blobName)

    def unknown_value(self, typeName, var, typ):
        return '%s::Owned(format!("%s({})", %s))' % (self.cow, typeName, var)

    def string_signature(self, typ):
        return "%s<'static, str>" % self.cow, ((self.type_name(typ), "i"),)

    def parse_signature(self, typ):
        return "Option<%s>" % self.type_name(typ), (("&str", "s"),)

    def scan_prologue(self, longest):
        return []

    def scan_run(self, stringFunc, lo, hi, typ):
        return [
            "for u in %s..=%s {" % (self.int_literal(lo, typ), self.int_literal(hi, typ)),
            "  if %s(u) == s {" % stringFunc,
            "    return Some(u);",
            "  }",
            "}",
        ]

    def not_found(self):
        return "None"

    def return_stmt(self, expr):
        return expr

    def _map_type(self, typ):
        return "std::collections::HashMap<%s, &'static str>" % self.type_name(typ)

    def sparse_helpers(self, code, names, typ):
        """Register the function that builds the value→name map once,
        inside a ``std::sync::OnceLock``."""
        mapType = self._map_type(typ)
        values = names["values"]
        body = [
            "static MAP: std::sync::OnceLock<%s> = std::sync::OnceLock::new();" % mapType,
            "MAP.get_or_init(|| {",
            "  let mut m = std::collections::HashMap::new();",
            "  for k in 0..%s.len() {" % values,
            "    m.insert(%s, %s);"
            % (self.array_index(values, "k"), self._slice(names["name"], names["index"], "k")),
            "  }",
            "  m",
            "})",
        ]
        return code.addFunction(
            "&'static %s" % mapType,
            self.function_name(code.nameFor("%s_map" % names["type"])),
            (),
            body,
        )

    def sparse_string_body(self, names, typ):
        return [
            "match %s().get(&i) {" % names["map"],
            "  Some(s) => %s::Borrowed(*s)," % self.cow,
            "  None => %s," % self.unknown_value(names["type"], "i", typ),
            "}",
        ]

    def sparse_parse_body(self, names, typ):
        return [
            "for (v, name) in %s() {" % names["map"],
            "  if *name == s {",
            "    return Some(*v);",
            "  }",
            "}",
            "None",
        ]


languageClasses = {
    "c": LanguageC,
    "rust": LanguageRust,
}

languages = {k: v() for k, v in languageClasses.items()}


class Array:
    """A named typed array for code generation."""

    def __init__(self, typ, values):
        self.typ = typ
        self.values = list(values)


class Function:
    """A generated function; ``body`` is a list of statement lines."""

    def __init__(self, retType, args, body, *, private=True):
        self.retType = retType
        self.args = args
        self.body = body
        self.private = private


class Code:
    """Accumulator for generated name blobs, arrays and functions.

    During ``genCode()``, each layout registers its blobs (``addString``),
    index and value arrays (``addArray``) and accessor functions
    (``addFunction``) here.  Registering the same name twice with the
    same contents is a no-op; with different contents it is an error,
    which happens when two types of one name share a Code object.

    Call ``print_code()`` to emit all accumulated declarations in the
    target language.
    """

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self.strings = collections.OrderedDict()
        self.arrays = collections.OrderedDict()
        self.functions = collections.OrderedDict()

    def nameFor(self, name: str) -> str:
        if not self.namespace:
            return name
        return "%s_%s" % (self.namespace, name)

    def addString(self, name: str, text: str) -> str:
        if self.strings.setdefault(name, text) != text:
            raise ValueError("%s already defined with different contents" % name)
        return name

    def addArray(self, typ: str, name: str, values: List[Any]) -> str:
        array = self.arrays.get(name)
        if array is None:
            self.arrays[name] = Array(typ, values)
        elif array.typ != typ or array.values != list(values):
            raise ValueError("%s already defined with different contents" % name)
        return name

    def addFunction(
        self,
        retType: str,
        name: str,
        args: Tuple[Tuple[str, str], ...],
        body: List[str],
        *,
        private: bool = True,
    ) -> str:
        function = self.functions.get(name)
        if function is None:
            self.functions[name] = Function(retType, args, body, private=private)
        elif (
            function.retType != retType
            or function.args != args
            or function.body != body
            or function.private != private
        ):
            raise ValueError("%s already defined with different contents" % name)
        return name

    def print_code(
        self,
        *,
        file: TextIO = sys.stdout,
        private: bool = True,
        indent: Union[int, str] = 0,
        language: Union[str, "Language"] = "c",
    ) -> None:
        if isinstance(indent, int):
            indent *= " "
        printn = partial(print, file=file, sep="")
        println = partial(printn, indent)

        if isinstance(language, str):
            language = languages[language]

        language.print_preamble(print=println)

        for name, text in self.strings.items():
            language.print_string(name, text, print=println, private=private)

        if self.strings and self.arrays:
            printn()

        for name, array in self.arrays.items():
            language.print_array(name, array, print=println, private=private)

        for name, function in self.functions.items():
            printn()
            language.print_function(name, function, print=println)


if __name__ == "__main__":
    import doctest

    sys.exit(doctest.testmod().failed)
