import io
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import threading

import pytest

from enumTab import (
    Code,
    Entry,
    LanguageC,
    LanguageRust,
    MalformedInputError,
    MultiLayout,
    NameBlob,
    ParseAccessor,
    SingleLayout,
    SparseLayout,
    SparseTable,
    StringAccessor,
    languages,
    languageClasses,
    normalize,
    normalizeType,
    pack_enum,
    pack_enums,
    runsCost,
    select_layout,
    sparseCost,
    split_runs,
    synthesize,
    typeRange,
    wrapValue,
)


# ── Fixtures ───────────────────────────────────────────────────────


DAY = [
    ("Monday", 0),
    ("Tuesday", 1),
    ("Wednesday", 2),
    ("Thursday", 3),
    ("Friday", 4),
    ("Saturday", 5),
    ("Sunday", 6),
]

# The first constant is blank in the source, so values start at one.
NUMBER = [("One", 1), ("Two", 2), ("Three", 3), ("AnotherOne", 1)]

GAP = [
    ("Two", 2),
    ("Three", 3),
    ("Five", 5),
    ("Six", 6),
    ("Seven", 7),
    ("Eight", 8),
    ("Nine", 9),
    ("Eleven", 11),
]

NUM = [("m_2", -2), ("m_1", -1), ("m0", 0), ("m1", 1), ("m2", 2)]

UNUM = [("m_2", 253), ("m_1", 254), ("m0", 0), ("m1", 1), ("m2", 2)]

PRIME = [
    ("p2", 2),
    ("p3", 3),
    ("p5", 5),
    ("p7", 7),
    ("p77", 7),
    ("p11", 11),
    ("p13", 13),
    ("p17", 17),
    ("p19", 19),
    ("p23", 23),
    ("p29", 29),
    ("p37", 31),
    ("p41", 41),
    ("p43", 43),
]

FIRST_14_PRIMES = [2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41, 43]

FIB = [
    ("Zero", 0),
    ("One", 1),
    ("AnotherOne", 1),
    ("Two", 2),
    ("Three", 3),
    ("Five", 5),
    ("Eight", 8),
    ("Thirteen", 13),
]

HUNDREDS = [
    ("One", 100),
    ("Two", 200),
    ("Three", 300),
    ("Four", 400),
    ("Five", 500),
    ("HighFive", 500),
    ("Six", 600),
    ("Seven", 700),
    ("Eight", 800),
    ("Nine", 900),
    ("Ten", 1000),
    ("Eleven", 1100),
    ("Twelve", 1200),
]

MOOD = [("Negative", -1), ("Neutral", 0), ("Happy", 1)]

PREFIX = [
    ("TypeInt", 0),
    ("TypeString", 1),
    ("TypeFloat", 2),
    ("TypeRune", 3),
    ("TypeByte", 4),
    ("TypeStruct", 5),
    ("TypeSlice", 6),
]

MONTH = [
    (name, i)
    for i, name in enumerate(
        [
            "January",
            "February",
            "March",
            "April",
            "May",
            "June",
            "July",
            "August",
            "September",
            "October",
            "November",
            "December",
        ]
    )
]

# (typeName, integer type, pairs) for the cases shared by several suites.
CASES = [
    ("Day", "int", DAY),
    ("Number", "int", NUMBER),
    ("Gap", "int", GAP),
    ("Num", "int", NUM),
    ("Unum", "u8", UNUM),
    ("Prime", "int", PRIME),
    ("Fib", "int", FIB),
    ("Hundred", "int", HUNDREDS),
    ("Mood", "int", MOOD),
    ("Month", "int", MONTH),
    ("Empty", "int", []),
    ("Edge", "u64", [("Zero", 0), ("Max", 2**64 - 1)]),
    ("Low", "i64", [("Min", -(2**63)), ("MinPlus", -(2**63) + 1)]),
    ("Byte", "i8", [("Lo", -128), ("Mid", 0), ("Hi", 127)]),
]


def _ids(cases):
    return [c[0] for c in cases]


def _kinds(layout):
    return [(run.minV, run.maxV) for run in layout.runs]


# ── Integer types ──────────────────────────────────────────────────


class TestNormalizeType:
    def test_abbreviations(self):
        assert normalizeType("i8") == "i8"
        assert normalizeType("u64") == "u64"

    def test_c_spellings(self):
        assert normalizeType("uint32_t") == "u32"
        assert normalizeType("int16_t") == "i16"

    def test_aliases(self):
        assert normalizeType("int") == "i64"
        assert normalizeType("uint") == "u64"
        assert normalizeType("byte") == "u8"
        assert normalizeType("rune") == "i32"
        assert normalizeType("int8") == "i8"

    def test_unknown_raises(self):
        for typ in ("float", "i128", "", "u7", "string"):
            with pytest.raises(MalformedInputError):
                normalizeType(typ)

    def test_non_string_raises(self):
        with pytest.raises(MalformedInputError):
            normalizeType(32)


class TestTypeRange:
    def test_unsigned(self):
        assert typeRange("u8") == (0, 255)
        assert typeRange("u64") == (0, 2**64 - 1)

    def test_signed(self):
        assert typeRange("i16") == (-32768, 32767)
        assert typeRange("i64") == (-(2**63), 2**63 - 1)


class TestWrapValue:
    def test_in_range_unchanged(self):
        assert wrapValue(5, "u8") == 5
        assert wrapValue(-5, "i8") == -5

    def test_unsigned_wrap(self):
        assert wrapValue(-1, "u8") == 255
        assert wrapValue(256, "u8") == 0
        assert wrapValue(-1, "u64") == 2**64 - 1

    def test_signed_wrap(self):
        assert wrapValue(128, "i8") == -128
        assert wrapValue(-129, "i8") == 127
        assert wrapValue(2**64 - 1, "i64") == -1


# ── Normalization ──────────────────────────────────────────────────


class TestNameBlob:
    def test_offsets(self):
        blob = NameBlob(["One", "Two", "Three"])
        assert blob.text == "OneTwoThree"
        assert blob.index == [0, 3, 6, 11]
        assert list(blob) == ["One", "Two", "Three"]
        assert len(blob) == 3

    def test_offsets_are_bytes(self):
        blob = NameBlob(["é", "ab"])
        assert blob.data == b"\xc3\xa9ab"
        assert blob.index == [0, 2, 4]
        assert blob[0] == "é"
        assert blob[1] == "ab"

    def test_empty(self):
        blob = NameBlob([])
        assert blob.index == [0]
        assert blob.text == ""
        assert len(blob) == 0


class TestNormalize:
    def test_duplicate_collapse(self):
        s = normalize("T", [("A", 1), ("B", 2), ("C", 1)])
        assert [(e.name, e.value) for e in s] == [("A", 1), ("B", 2)]
        assert len(s.duplicates) == 1
        dropped, kept = s.duplicates[0]
        assert dropped == Entry("C", 1, 2)
        assert kept == Entry("A", 1, 0)

    def test_sorted_by_value(self):
        s = normalize("T", [("b", 5), ("a", -1), ("c", 2)])
        assert [e.value for e in s] == [-1, 2, 5]
        assert [e.order for e in s] == [1, 2, 0]

    def test_all_duplicates(self):
        s = normalize("T", [("X", 7), ("Y", 7), ("Z", 7)])
        assert [(e.name, e.value) for e in s] == [("X", 7)]
        assert len(s.duplicates) == 2

    def test_empty(self):
        s = normalize("T", [])
        assert len(s) == 0
        assert s.duplicates == []

    def test_type_is_normalized(self):
        s = normalize("T", [("A", 1)], "uint8_t")
        assert s.typ == "u8"
        assert not s.signed
        assert normalize("T", [("A", 1)]).signed

    def test_accepts_generator(self):
        s = normalize("T", ((n, v) for n, v in DAY))
        assert len(s) == 7

    def test_trim_prefix(self):
        s = normalize("Type", PREFIX, trim_prefix="Type")
        assert [e.name for e in s] == [
            "Int",
            "String",
            "Float",
            "Rune",
            "Byte",
            "Struct",
            "Slice",
        ]

    def test_trim_prefix_leaves_other_names(self):
        s = normalize("T", [("TypeA", 0), ("Other", 1)], trim_prefix="Type")
        assert [e.name for e in s] == ["A", "Other"]

    def test_same_name_same_value_is_duplicate(self):
        s = normalize("T", [("A", 1), ("A", 1)])
        assert len(s) == 1
        assert len(s.duplicates) == 1

    def test_same_name_different_value_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", 1), ("A", 2)])

    def test_dropped_name_cannot_be_redeclared(self):
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", 1), ("C", 1), ("C", 2)])

    def test_value_out_of_range_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", 256)], "u8")
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", -1)], "u8")
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", 128)], "i8")

    def test_non_integer_value_raises(self):
        for value in ("1", 1.0, None, True):
            with pytest.raises(MalformedInputError):
                normalize("T", [("A", value)])

    def test_bad_pair_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("T", [("A", 1, 2)])
        with pytest.raises(MalformedInputError):
            normalize("T", [42])

    def test_bad_name_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("T", [("", 1)])
        with pytest.raises(MalformedInputError):
            normalize("T", [(3, 1)])

    def test_bad_type_name_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("", [("A", 1)])

    def test_unencodable_name_raises(self):
        # Invalid UTF-8 on the command line decodes to lone surrogates.
        with pytest.raises(MalformedInputError):
            normalize("T", [("A\udcff", 0), ("B", 1)])

    def test_name_empty_after_trim_raises(self):
        with pytest.raises(MalformedInputError):
            normalize("Type", [("Type", 0), ("TypeA", 1)], trim_prefix="Type")

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            normalize("T", [("A", 300)], "u8")

    def test_duplicates_logged(self, caplog):
        caplog.set_level(logging.DEBUG, logger="enumTab")
        normalize("T", [("A", 1), ("C", 1)])
        assert "dropping C" in caplog.text


# ── Layout selection ───────────────────────────────────────────────


class TestSplitRuns:
    def test_gaps(self):
        runs = split_runs(normalize("Gap", GAP).entries)
        assert [(r.minV, r.maxV) for r in runs] == [(2, 3), (5, 9), (11, 11)]
        assert [len(r) for r in runs] == [2, 5, 1]

    def test_unsigned_wraparound_is_two_runs(self):
        runs = split_runs(normalize("Unum", UNUM, "u8").entries)
        assert [(r.minV, r.maxV) for r in runs] == [(0, 2), (253, 254)]
        assert runs[0].blob.text == "m0m1m2"
        assert runs[1].blob.text == "m_2m_1"

    def test_signed_span_over_zero_is_one_run(self):
        runs = split_runs(normalize("Num", NUM).entries)
        assert [(r.minV, r.maxV) for r in runs] == [(-2, 2)]

    def test_empty(self):
        assert split_runs([]) == []

    def test_run_lookup(self):
        run = split_runs(normalize("Num", NUM).entries)[0]
        assert -2 in run
        assert 3 not in run
        assert run.name(-2) == "m_2"
        assert run.name(2) == "m2"


class TestSelectLayout:
    def test_day_is_single(self):
        layout = pack_enum("Day", DAY)
        assert isinstance(layout, SingleLayout)
        assert layout.kind == "single"
        assert layout.run.blob.text == "MondayTuesdayWednesdayThursdayFridaySaturdaySunday"
        assert layout.run.blob.index == [0, 6, 13, 22, 30, 36, 44, 50]

    def test_offset_is_single(self):
        layout = pack_enum("Number", NUMBER)
        assert layout.kind == "single"
        assert layout.run.minV == 1
        assert layout.run.blob.text == "OneTwoThree"
        assert layout.run.blob.index == [0, 3, 6, 11]

    def test_negative_start_is_single(self):
        layout = pack_enum("Mood", MOOD)
        assert layout.kind == "single"
        assert layout.run.minV == -1
        assert layout.run.blob.index == [0, 8, 15, 20]

    def test_prefix(self):
        layout = pack_enum("Type", PREFIX, trim_prefix="Type")
        assert layout.run.blob.text == "IntStringFloatRuneByteStructSlice"
        assert layout.run.blob.index == [0, 3, 9, 14, 18, 22, 28, 33]

    def test_month(self):
        layout = pack_enum("Month", MONTH)
        assert layout.run.blob.index == [0, 7, 15, 20, 25, 28, 32, 36, 42, 51, 58, 66, 74]

    def test_gap_is_multi(self):
        layout = pack_enum("Gap", GAP)
        assert isinstance(layout, MultiLayout)
        assert layout.describe()["runs"] == (
            (2, 3, "TwoThree", (0, 3, 8)),
            (5, 9, "FiveSixSevenEightNine", (0, 4, 7, 12, 17, 21)),
            (11, 11, "Eleven", (0, 6)),
        )

    def test_gap_cost(self):
        layout = pack_enum("Gap", GAP)
        assert layout.cost == 118
        assert sparseCost(layout.enumSet.entries) == 163

    def test_unum_is_multi(self):
        layout = pack_enum("Unum", UNUM, "u8")
        assert layout.kind == "multi"
        assert layout.describe()["runs"] == (
            (0, 2, "m0m1m2", (0, 2, 4, 6)),
            (253, 254, "m_2m_1", (0, 3, 6)),
        )

    def test_fib_is_multi(self):
        layout = pack_enum("Fib", FIB)
        assert layout.kind == "multi"
        assert _kinds(layout) == [(0, 3), (5, 5), (8, 8), (13, 13)]
        assert layout.runs[0].blob.text == "ZeroOneTwoThree"
        assert layout.runs[0].blob.index == [0, 4, 7, 10, 15]

    def test_prime_is_sparse(self):
        layout = pack_enum("Prime", PRIME)
        assert isinstance(layout, SparseLayout)
        d = layout.describe()
        assert d["name"] == "p2p3p5p7p11p13p17p19p23p29p37p41p43"
        assert d["map"][:4] == ((2, 0, 2), (3, 2, 4), (5, 4, 6), (7, 6, 8))
        assert d["map"][10] == (31, 26, 29)
        assert d["map"][-1] == (43, 32, 35)
        assert len(layout.runs) == 12

    def test_first_14_primes_are_sparse(self):
        pairs = [("p%d" % p, p) for p in FIRST_14_PRIMES]
        layout = pack_enum("Prime", pairs)
        assert layout.kind == "sparse"
        assert len(layout.runs) == 13

    def test_hundreds_are_sparse(self):
        layout = pack_enum("Hundred", HUNDREDS)
        assert layout.kind == "sparse"
        assert layout.blob.text == "OneTwoThreeFourFiveSixSevenEightNineTenElevenTwelve"

    def test_run_ceiling_is_configurable(self):
        pairs = [("p%d" % p, p) for p in FIRST_14_PRIMES]
        s = normalize("Prime", pairs)
        assert runsCost(split_runs(s.entries)) == 377
        assert sparseCost(s.entries) == 262
        assert select_layout(s, max_runs=100).kind == "multi"
        assert select_layout(s, max_runs=100, sparse_factor=1).kind == "sparse"

    def test_cost_decides_below_ceiling(self):
        pairs = [("v%d" % v, v) for v in range(0, 20, 2)]
        s = normalize("Even", pairs)
        runs = split_runs(s.entries)
        assert len(runs) == 10
        assert runsCost(runs) == 285
        assert sparseCost(s.entries) == 185
        assert select_layout(s).kind == "sparse"
        assert select_layout(s, sparse_factor=2).kind == "multi"

    def test_zero_ceiling_forces_sparse(self):
        assert pack_enum("Gap", GAP, max_runs=0).kind == "sparse"

    def test_single_ignores_ceiling(self):
        assert pack_enum("Day", DAY, max_runs=0).kind == "single"

    def test_empty_is_multi_without_runs(self):
        layout = pack_enum("Empty", [])
        assert layout.kind == "multi"
        assert layout.runs == []
        assert layout.cost == 0

    def test_all_duplicates_is_single(self):
        layout = pack_enum("T", [("X", 7), ("Y", 7)])
        assert layout.kind == "single"
        assert layout.run.blob.text == "X"

    def test_bad_knobs_raise(self):
        s = normalize("Gap", GAP)
        with pytest.raises(ValueError):
            select_layout(s, max_runs=-1)
        with pytest.raises(ValueError):
            select_layout(s, sparse_factor=-0.5)

    def test_single_layout_needs_one_run(self):
        s = normalize("Gap", GAP)
        with pytest.raises(ValueError):
            SingleLayout(s, split_runs(s.entries))

    @pytest.mark.parametrize("typeName,typ,pairs", CASES, ids=_ids(CASES))
    def test_idempotent(self, typeName, typ, pairs):
        a = pack_enum(typeName, pairs, typ)
        b = pack_enum(typeName, pairs, typ)
        assert a.describe() == b.describe()
        assert repr(a.describe()) == repr(b.describe())

    def test_layout_logged(self, caplog):
        caplog.set_level(logging.DEBUG, logger="enumTab")
        pack_enum("Gap", GAP)
        assert "multi layout" in caplog.text


# ── Accessors ──────────────────────────────────────────────────────


class TestRoundTrip:
    @pytest.mark.parametrize("typeName,typ,pairs", CASES, ids=_ids(CASES))
    def test_round_trip(self, typeName, typ, pairs):
        layout = pack_enum(typeName, pairs, typ)
        stringer, parser = synthesize(layout, from_string=True)
        for e in layout.enumSet:
            assert stringer(e.value) == e.name
            assert parser(e.name) == (e.value, True)

    @pytest.mark.parametrize("typeName,typ,pairs", CASES, ids=_ids(CASES))
    def test_unknown_values(self, typeName, typ, pairs):
        layout = pack_enum(typeName, pairs, typ)
        stringer, _ = synthesize(layout)
        minV, maxV = typeRange(layout.typ)
        values = {e.value for e in layout.enumSet}
        for v in (minV, maxV, 0, 1, -1, 4, 127, 1000):
            v = wrapValue(v, layout.typ)
            if v not in values:
                assert stringer(v) == "%s(%d)" % (typeName, v)


class TestStringAccessor:
    def test_number(self):
        stringer, parser = synthesize(pack_enum("Number", NUMBER), True)
        assert stringer(1) == "One"
        assert stringer(3) == "Three"
        assert stringer(127) == "Number(127)"
        assert stringer(0) == "Number(0)"
        assert parser("AnotherOne") == (0, False)
        assert parser("127") == (0, False)

    def test_negative_offset(self):
        stringer, _ = synthesize(pack_enum("Num", NUM))
        assert stringer(-2) == "m_2"
        assert stringer(2) == "m2"
        assert stringer(-3) == "Num(-3)"
        assert stringer(3) == "Num(3)"

    def test_unsigned_formatting(self):
        stringer, _ = synthesize(pack_enum("Unum", UNUM, "u8"))
        assert stringer(253) == "m_2"
        assert stringer(0) == "m0"
        assert stringer(252) == "Unum(252)"
        assert stringer(255) == "Unum(255)"
        assert stringer(-1) == "Unum(255)"

    def test_unsigned_64(self):
        stringer, _ = synthesize(pack_enum("Big", [("Max", 2**64 - 1)], "u64"))
        assert stringer(-1) == "Max"
        assert stringer(2**63) == "Big(9223372036854775808)"

    def test_gap(self):
        stringer, _ = synthesize(pack_enum("Gap", GAP))
        assert stringer(5) == "Five"
        assert stringer(9) == "Nine"
        assert stringer(11) == "Eleven"
        assert stringer(4) == "Gap(4)"
        assert stringer(10) == "Gap(10)"

    def test_prime(self):
        stringer, _ = synthesize(pack_enum("Prime", PRIME))
        assert stringer(7) == "p7"
        assert stringer(31) == "p37"
        assert stringer(4) == "Prime(4)"
        assert stringer(37) == "Prime(37)"

    def test_first_14_primes(self):
        pairs = [("p%d" % p, p) for p in FIRST_14_PRIMES]
        stringer, _ = synthesize(pack_enum("Prime", pairs))
        for p in FIRST_14_PRIMES:
            assert stringer(p) == "p%d" % p
        for n in (0, 1, 4, 6, 9, 15, 44):
            assert stringer(n) == "Prime(%d)" % n

    def test_duplicate_unreachable(self):
        stringer, parser = synthesize(pack_enum("T", [("A", 1), ("B", 2), ("C", 1)]), True)
        assert stringer(1) == "A"
        assert parser("C") == (0, False)
        assert parser("A") == (1, True)

    def test_empty(self):
        stringer, parser = synthesize(pack_enum("Empty", []), True)
        assert stringer(0) == "Empty(0)"
        assert parser("") == (0, False)

    def test_non_integer_raises(self):
        stringer, _ = synthesize(pack_enum("Day", DAY))
        with pytest.raises(TypeError):
            stringer("Monday")
        with pytest.raises(TypeError):
            stringer(1.0)

    def test_describe_branches(self):
        stringer = StringAccessor(pack_enum("Gap", GAP))
        assert stringer.describe() == {
            "kind": "multi",
            "branches": (
                (2, 3, 2, "TwoThree", (0, 3, 8)),
                (5, 9, 5, "FiveSixSevenEightNine", (0, 4, 7, 12, 17, 21)),
                (11, 11, 11, "Eleven", (0, 6)),
            ),
            "unknown": "Gap",
        }

    def test_describe_sparse(self):
        stringer = StringAccessor(pack_enum("Prime", PRIME))
        d = stringer.describe()
        assert d["lookup"] == "table"
        assert d["name"] == "p2p3p5p7p11p13p17p19p23p29p37p41p43"
        assert d["values"] == (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 41, 43)
        assert d["unknown"] == "Prime"


class TestParseAccessor:
    def setup_method(self):
        self.stringer, self.parser = synthesize(pack_enum("Day", DAY), True)

    def test_found(self):
        assert self.parser("Monday") == (0, True)
        assert self.parser("Sunday") == (6, True)

    def test_exact_match_only(self):
        assert self.parser("monday") == (0, False)
        assert self.parser(" Monday") == (0, False)
        assert self.parser("Mon") == (0, False)
        assert self.parser("Day(7)") == (0, False)

    def test_not_requested(self):
        _, parser = synthesize(pack_enum("Day", DAY))
        assert parser is None

    def test_sparse(self):
        _, parser = synthesize(pack_enum("Hundred", HUNDREDS), True)
        assert parser("Five") == (500, True)
        assert parser("HighFive") == (0, False)
        assert parser("Twelve") == (1200, True)

    def test_describe(self):
        layout = pack_enum("Gap", GAP)
        parser = ParseAccessor(layout, StringAccessor(layout))
        assert parser.describe() == {"scan": ((2, 3), (5, 9), (11, 11))}


class TestSparseTable:
    def test_lazy(self):
        layout = pack_enum("Prime", PRIME)
        assert not layout.table.populated
        stringer, _ = synthesize(layout)
        assert not layout.table.populated
        stringer(2)
        assert layout.table.populated

    def test_built_once(self):
        layout = pack_enum("Prime", PRIME)
        stringer, parser = synthesize(layout, True)
        for p in (2, 3, 4, 31):
            stringer(p)
        parser("p43")
        assert layout.table.builds == 1

    def test_contents(self):
        table = SparseTable(NameBlob(["a", "bb"]), [10, 20])
        assert table.get() == {10: "a", 20: "bb"}
        assert table.get() is table.get()

    def test_concurrent_first_use(self):
        layout = pack_enum("Prime", PRIME)
        table = layout.table
        n = 8
        barrier = threading.Barrier(n)
        results = []

        def worker():
            barrier.wait()
            results.append(table.get())

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == n
        assert all(r is results[0] for r in results)
        assert table.builds == 1


class TestPackEnums:
    def test_results_per_type(self):
        results = pack_enums(
            [
                ("Day", "int", DAY),
                ("Bad", "u8", [("A", 300)]),
                ("Prime", "int", PRIME),
            ],
            from_string=True,
        )
        assert [r.typeName for r in results] == ["Day", "Bad", "Prime"]
        assert [r.ok for r in results] == [True, False, True]
        assert isinstance(results[1].error, MalformedInputError)
        assert results[1].layout is None
        assert results[0].stringer(3) == "Thursday"
        assert results[2].parser("p37") == (31, True)

    def test_from_string_off(self):
        (result,) = pack_enums([("Day", "int", DAY)])
        assert result.parser is None

    def test_unencodable_name_does_not_stop_batch(self):
        results = pack_enums(
            [
                ("Bad", "int", [("A\udcff", 0), ("B", 1)]),
                ("Good", "int", [("X", 0)]),
            ]
        )
        assert [r.ok for r in results] == [False, True]
        assert isinstance(results[0].error, MalformedInputError)
        assert results[1].stringer(0) == "X"

    def test_failure_logged(self, caplog):
        caplog.set_level(logging.WARNING, logger="enumTab")
        pack_enums([("Bad", "u8", [("A", -1)])])
        assert "skipping Bad" in caplog.text


# ── Language backends ──────────────────────────────────────────────


class TestLanguageC:
    def setup_method(self):
        self.c = LanguageC()

    def test_type_name(self):
        assert self.c.type_name("u8") == "uint8_t"
        assert self.c.type_name("i64") == "int64_t"

    def test_type_for(self):
        assert self.c.type_for(0, 255) == "uint8_t"
        assert self.c.type_for(0, 256) == "uint16_t"
        assert self.c.type_for(0, 65536) == "uint32_t"

    def test_int_literal(self):
        assert self.c.int_literal(5, "u8") == "5"
        assert self.c.int_literal(5, "u32") == "5u"
        assert self.c.int_literal(5, "u64") == "5ULL"
        assert self.c.int_literal(-2, "i64") == "-2"
        assert self.c.int_literal(2**40, "i64") == "1099511627776LL"
        assert self.c.int_literal(-(2**31), "i32") == "-2147483648LL"
        assert self.c.int_literal(-(2**63), "i64") == "INT64_MIN"

    def test_range_test(self):
        assert self.c.range_test("i", 2, 3, "i64") == "2 <= i && i <= 3"
        assert self.c.range_test("i", 11, 11, "i64") == "i == 11"
        assert self.c.range_test("i", 0, 2, "u8") == "i <= 2"
        assert self.c.range_test("i", 253, 255, "u8") == "253 <= i"
        assert self.c.range_test("i", 0, 255, "u8") is None

    def test_if_block(self):
        assert self.c.if_block("x", ["y;"]) == ["if (x)", "{", "  y;", "}"]
        assert self.c.if_block(None, ["y;"]) == ["y;"]

    def test_offset_index(self):
        assert self.c.offset_index("i", 0, "i64") == "(size_t) i"
        assert (
            self.c.offset_index("i", -2, "i64")
            == "(size_t) ((uint64_t) i - (uint64_t) -2)"
        )

    def test_string_literal(self):
        assert self.c.string_literal("abc") == '"abc"'
        assert self.c.string_literal('a"b\\c?') == '"a\\"b\\\\c\\?"'
        assert self.c.string_literal("é") == '"\\303\\251"'

    def test_declare_function(self):
        result = self.c.declare_function(
            "static inline", "int", "f", (("const char *", "s"), ("int64_t *", "v"))
        )
        assert result == "static inline int f (const char *s, int64_t *v)"

    def test_declare_string(self):
        assert self.c.declare_string("static const", "X") == "static const char X[]"

    def test_preamble(self):
        buf = io.StringIO()
        self.c.print_preamble(print=lambda *a: print(*a, file=buf))
        assert "#include <inttypes.h>" in buf.getvalue()


class TestLanguageRust:
    def setup_method(self):
        self.rs = LanguageRust()

    def test_names(self):
        assert self.rs.static_name("Day_name") == "DAY_NAME"
        assert self.rs.function_name("Day_string") == "day_string"

    def test_int_literal(self):
        assert self.rs.int_literal(-2, "i64") == "-2i64"
        assert self.rs.int_literal(253, "u8") == "253u8"

    def test_range_test(self):
        assert self.rs.range_test("i", -2, 2, "i64") == "-2i64 <= i && i <= 2i64"

    def test_if_block(self):
        assert self.rs.if_block("x", ["y;"]) == ["if x {", "  y;", "}"]

    def test_offset_index(self):
        assert self.rs.offset_index("i", 0, "u8") == "i as usize"
        assert (
            self.rs.offset_index("i", 253, "u8")
            == "(i as u64).wrapping_sub((253u8) as u64) as usize"
        )

    def test_string_literal(self):
        assert self.rs.string_literal('a"b') == '"a\\"b"'
        assert self.rs.string_literal("é") == '"é"'
        assert self.rs.string_literal("\n") == '"\\u{a}"'

    def test_declare_function(self):
        result = self.rs.declare_function("", "Option<u8>", "f", (("&str", "s"),))
        assert result == "fn f (s: &str) -> Option<u8>"

    def test_array_index_unsafe(self):
        rs = LanguageRust(unsafe_array_access=True)
        assert rs.array_index("arr", "i") == "unsafe { *(arr.get_unchecked(i)) }"

    def test_slice(self):
        assert self.rs.return_slice("N", "IX", "k") == (
            "return std::borrow::Cow::Borrowed("
            "&N[(IX[k]) as usize..(IX[k + 1]) as usize]);"
        )
        rs = LanguageRust(unsafe_array_access=True)
        assert rs.as_usize(rs.array_index("IX", "k")) == (
            "(unsafe { *(IX.get_unchecked(k)) }) as usize"
        )


class TestLanguagesDict:
    def test_has_c_and_rust(self):
        assert isinstance(languages["c"], LanguageC)
        assert isinstance(languages["rust"], LanguageRust)
        assert languageClasses["c"] is LanguageC
        assert languageClasses["rust"] is LanguageRust


# ── Code class ─────────────────────────────────────────────────────


class TestCode:
    def test_namespace(self):
        assert Code("ns").nameFor("foo") == "ns_foo"
        assert Code().nameFor("foo") == "foo"

    def test_add_string(self):
        code = Code()
        assert code.addString("a", "xy") == "a"
        assert code.addString("a", "xy") == "a"
        with pytest.raises(ValueError):
            code.addString("a", "z")

    def test_add_array(self):
        code = Code()
        code.addArray("uint8_t", "t", [1, 2])
        code.addArray("uint8_t", "t", [1, 2])
        assert code.arrays["t"].values == [1, 2]
        with pytest.raises(ValueError):
            code.addArray("uint8_t", "t", [3])

    def test_add_function_dedup(self):
        code = Code()
        code.addFunction("int", "f", (), ["return 0;"])
        code.addFunction("int", "f", (), ["return 0;"])
        assert len(code.functions) == 1
        with pytest.raises(ValueError):
            code.addFunction("int", "f", (), ["return 1;"])

    def test_same_type_twice_conflicts(self):
        code = Code()
        pack_enum("T", DAY).genCode(code)
        with pytest.raises(ValueError):
            pack_enum("T", GAP).genCode(code)


# ── Code generation ────────────────────────────────────────────────


def _generate(layout, language="c", from_string=False, namespace="", **lang_kwargs):
    """Helper: generate code for a layout as a string."""
    lang = languageClasses[language](**lang_kwargs)
    code = Code(namespace)
    layout.genCode(code, lang, from_string=from_string)
    buf = io.StringIO()
    code.print_code(file=buf, language=lang)
    return buf.getvalue()


DAY_C = r"""#include <stdint.h>
#include <inttypes.h>
#include <stdio.h>
#include <string.h>

static const char Day_name[] = "MondayTuesdayWednesdayThursdayFridaySaturdaySunday";

static const uint8_t Day_index[8]=
{
   0, 6,13,22,30,36,44,50,
};

static inline int Day_string (int64_t i, char *buf, size_t size)
{
  if (0 <= i && i <= 6)
  {
    size_t k = (size_t) i;
    return snprintf (buf, size, "%.*s", (int) (Day_index[k+1] - Day_index[k]), Day_name + Day_index[k]);
  }
  return snprintf (buf, size, "Day(%" PRId64 ")", (int64_t) i);
}
"""


class TestGenCodeC:
    def test_day_golden(self):
        assert _generate(pack_enum("Day", DAY)) == DAY_C

    def test_offset_subtraction(self):
        out = _generate(pack_enum("Num", NUM))
        assert "if (-2 <= i && i <= 2)" in out
        assert "size_t k = (size_t) ((uint64_t) i - (uint64_t) -2);" in out

    def test_multi(self):
        out = _generate(pack_enum("Gap", GAP))
        assert 'static const char Gap_name_0[] = "TwoThree";' in out
        assert 'static const char Gap_name_2[] = "Eleven";' in out
        assert "Gap_index_1" in out
        assert "Gap_index_2" not in out
        assert "if (i == 11)" in out
        assert 'return snprintf (buf, size, "%s", Gap_name_2);' in out

    def test_unsigned(self):
        out = _generate(pack_enum("Unum", UNUM, "u8"))
        assert "int Unum_string (uint8_t i, char *buf, size_t size)" in out
        assert "if (i <= 2)" in out
        assert "if (253 <= i && i <= 254)" in out
        assert "PRIu64" in out

    def test_sparse(self):
        out = _generate(pack_enum("Prime", PRIME))
        assert "static const int64_t Prime_values[13]" in out
        assert "static const uint8_t Prime_index[14]" in out
        assert "while (lo < hi)" in out

    def test_from_string(self):
        out = _generate(pack_enum("Day", DAY), from_string=True)
        assert "int Day_from_string (const char *s, int64_t *v)" in out
        assert "char buf[10];" in out
        assert "Day_string (u, buf, sizeof buf);" in out

    def test_sparse_from_string(self):
        out = _generate(pack_enum("Prime", PRIME), from_string=True)
        assert "memcmp (s, Prime_name + Prime_index[k], n) == 0" in out

    def test_namespace(self):
        out = _generate(pack_enum("Day", DAY), namespace="my")
        assert "my_Day_string" in out
        assert "my_Day_name" in out

    def test_public(self):
        code = Code()
        pack_enum("Day", DAY).genCode(code, "c", private=False)
        buf = io.StringIO()
        code.print_code(file=buf, language="c")
        assert "extern inline int Day_string" in buf.getvalue()


class TestGenCodeRust:
    def test_single(self):
        out = _generate(pack_enum("Day", DAY), "rust")
        assert 'static DAY_NAME: &str = "MondayTuesday' in out
        assert "static DAY_INDEX: [u8; 8]" in out
        assert "#[inline]" in out
        assert "fn day_string (i: i64) -> std::borrow::Cow<'static, str>" in out
        assert "#include" not in out

    def test_sparse_once(self):
        out = _generate(pack_enum("Prime", PRIME), "rust", from_string=True)
        assert "std::sync::OnceLock" in out
        assert "fn prime_map ()" in out
        assert "match prime_map().get(&i) {" in out
        assert "fn prime_from_string (s: &str) -> Option<i64>" in out

    def test_from_string(self):
        out = _generate(pack_enum("Unum", UNUM, "u8"), "rust", from_string=True)
        assert "for u in 253u8..=254u8 {" in out
        assert "Option<u8>" in out

    def test_unsafe(self):
        out = _generate(pack_enum("Day", DAY), "rust", unsafe_array_access=True)
        assert "get_unchecked" in out


# ── End-to-end: compile generated code ─────────────────────────────


def _probe_values(layout):
    """Every named value plus the neighbours of each run and the type limits."""
    typ = layout.typ
    minV, maxV = typeRange(typ)
    values = {minV, maxV, 0}
    for run in split_runs(layout.enumSet.entries):
        values.update((run.minV, run.maxV))
        values.update(wrapValue(v, typ) for v in (run.minV - 1, run.maxV + 1))
    return sorted(values)


def _c_program(layout):
    lang = languages["c"]
    stringer, parser = synthesize(layout, True)
    typ, typeName = layout.typ, layout.typeName
    ctype = lang.type_name(typ)
    checks = ["  char buf[128];", "  %s v;" % ctype]
    for value in _probe_values(layout):
        checks.append(
            "  %s_string ((%s) %s, buf, sizeof buf);"
            % (typeName, ctype, lang.int_literal(value, typ))
        )
        checks.append(
            "  assert (strcmp (buf, %s) == 0);" % lang.string_literal(stringer(value))
        )
    for e in layout.enumSet:
        checks.append(
            "  assert (%s_from_string (%s, &v) == 1 && v == (%s) %s);"
            % (typeName, lang.string_literal(e.name), ctype, lang.int_literal(e.value, typ))
        )
    checks.append('  assert (%s_from_string ("no such name", &v) == 0);' % typeName)
    return (
        "#include <assert.h>\n"
        + _generate(layout, "c", from_string=True)
        + "\nint main (void)\n{\n"
        + "\n".join(checks)
        + '\n  printf ("PASS\\n");\n  return 0;\n}\n'
    )


def _rust_program(layout):
    lang = languages["rust"]
    stringer, parser = synthesize(layout, True)
    typ = layout.typ
    prefix = layout.typeName.lower()
    checks = []
    for value in _probe_values(layout):
        checks.append(
            "    assert_eq!(%s_string(%s), %s);"
            % (prefix, lang.int_literal(value, typ), lang.string_literal(stringer(value)))
        )
    for e in layout.enumSet:
        checks.append(
            "    assert_eq!(%s_from_string(%s), Some(%s));"
            % (prefix, lang.string_literal(e.name), lang.int_literal(e.value, typ))
        )
    checks.append('    assert_eq!(%s_from_string("no such name"), None);' % prefix)
    return (
        "#![allow(dead_code, unused_parens, unused_variables, unreachable_code)]\n\n"
        + _generate(layout, "rust", from_string=True)
        + "\nfn main() {\n"
        + "\n".join(checks)
        + '\n    println!("PASS");\n}\n'
    )


def _compile_and_run(source, suffix, compile_cmd):
    with tempfile.NamedTemporaryFile(suffix=suffix, mode="w", delete=False) as f:
        f.write(source)
        src = f.name
    out = src[: -len(suffix)]
    try:
        subprocess.run(compile_cmd(src, out), check=True, capture_output=True)
        result = subprocess.run([out], check=True, capture_output=True, text=True)
        assert result.stdout.strip() == "PASS"
    finally:
        os.unlink(src)
        if os.path.exists(out):
            os.unlink(out)


@pytest.mark.skipif(shutil.which("cc") is None, reason="no C compiler")
class TestEndToEndC:
    """Compile the generated C and check it against the Python accessors."""

    @pytest.mark.parametrize("typeName,typ,pairs", CASES, ids=_ids(CASES))
    def test_case(self, typeName, typ, pairs):
        layout = pack_enum(typeName, pairs, typ)
        _compile_and_run(
            _c_program(layout),
            ".c",
            lambda src, out: ["cc", "-o", out, src, "-std=c99", "-Wall"],
        )

    def test_forced_sparse(self):
        layout = pack_enum("Gap", GAP, max_runs=0)
        assert layout.kind == "sparse"
        _compile_and_run(
            _c_program(layout),
            ".c",
            lambda src, out: ["cc", "-o", out, src, "-std=c99", "-Wall"],
        )


@pytest.mark.skipif(shutil.which("rustc") is None, reason="no Rust compiler")
class TestEndToEndRust:
    """Compile the generated Rust and check it against the Python accessors."""

    @pytest.mark.parametrize("typeName,typ,pairs", CASES, ids=_ids(CASES))
    def test_case(self, typeName, typ, pairs):
        layout = pack_enum(typeName, pairs, typ)
        _compile_and_run(
            _rust_program(layout),
            ".rs",
            lambda src, out: ["rustc", "--edition", "2021", "-o", out, src],
        )


# ── CLI ────────────────────────────────────────────────────────────


class TestCLI:
    def _run(self, *args, input=None):
        result = subprocess.run(
            [sys.executable, "-m", "enumTab", *args],
            capture_output=True,
            text=True,
            input=input,
        )
        return result

    def test_no_args_shows_usage(self):
        r = self._run()
        assert r.returncode != 0
        assert "usage" in r.stderr.lower()

    def test_c_output(self):
        r = self._run("-t", "Day", "Monday=0", "Tuesday=1")
        assert r.returncode == 0
        assert "#include" in r.stdout
        assert "Day_string" in r.stdout
        assert "Day_from_string" not in r.stdout

    def test_rust_output(self):
        r = self._run("--rust", "-t", "Day", "Monday=0", "Tuesday=1")
        assert r.returncode == 0
        assert "fn day_string" in r.stdout
        assert "#include" not in r.stdout

    def test_from_string(self):
        r = self._run("--from-string", "-t", "Day", "Monday=0", "Tuesday=1")
        assert r.returncode == 0
        assert "Day_from_string" in r.stdout

    def test_analyze(self):
        args = ["%s=%d" % p for p in GAP]
        r = self._run("--analyze", "-t", "Gap", *args)
        assert r.returncode == 0
        assert "Found 3 runs" in r.stdout
        assert "Chosen layout: multi" in r.stdout

    def test_max_runs_flag(self):
        args = ["%s=%d" % p for p in GAP]
        r = self._run("--analyze", "--max-runs", "2", "-t", "Gap", *args)
        assert r.returncode == 0
        assert "Chosen layout: sparse" in r.stdout

    def test_analyze_duplicates(self):
        r = self._run("--analyze", "-t", "T", "A=1", "B=2", "C=1")
        assert "C = 1 (same value as A)" in r.stdout

    def test_hex_values(self):
        r = self._run("--analyze", "-t", "T", "A=0x10", "B=0x11")
        assert r.returncode == 0
        assert "Chosen layout: single" in r.stdout
        assert "16" in r.stdout

    def test_stdin(self):
        r = self._run("-t", "Day", input="Monday=0\nTuesday=1\n")
        assert r.returncode == 0
        assert "Day_string" in r.stdout

    def test_out_of_range(self):
        r = self._run("--int-type", "u8", "-t", "T", "A=300")
        assert r.returncode == 2
        assert "out of range" in r.stderr

    def test_bad_pair(self):
        r = self._run("-t", "T", "A")
        assert r.returncode == 2
        assert "NAME=VALUE" in r.stderr

    def test_bad_value(self):
        r = self._run("-t", "T", "A=x")
        assert r.returncode == 2

    def test_trim_prefix(self):
        r = self._run("--trim-prefix", "Type", "-t", "Type", "TypeInt=0", "TypeString=1")
        assert r.returncode == 0
        assert '"IntString"' in r.stdout

    def test_output_file(self, tmp_path):
        path = tmp_path / "day.c"
        r = self._run("-o", str(path), "-t", "Day", "Monday=0")
        assert r.returncode == 0
        assert r.stdout == ""
        assert "Day_string" in path.read_text()

    def test_input_file(self, tmp_path):
        path = tmp_path / "day.txt"
        path.write_text("Monday=0 Tuesday=1")
        r = self._run("-i", str(path), "-t", "Day")
        assert r.returncode == 0
        assert "Day_string" in r.stdout

    def test_help(self):
        r = self._run("--help")
        assert r.returncode == 0
        assert "enumTab" in r.stdout
