import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from fields import RADARR_SCHEMA, sonarr_schema
from filterql import (
    And,
    Comparison,
    FilterQL,
    MatchAll,
    Not,
    Operation,
    OperationError,
    Or,
    QuerySyntaxError,
    Truthy,
    UnknownFieldError,
    UnknownOperationError,
    compare,
    natural_key,
    tokenize,
)

ROWS = [
    {"title": "Dune", "year": 2021, "monitored": True, "releaseGroup": "FLUX",
     "videoCodec": "x265", "rawSize": 12_000, "size": "12 KB"},
    {"title": "The Lord of the Rings", "year": 2001, "monitored": False, "releaseGroup": None,
     "videoCodec": "x264", "rawSize": 30_000, "size": "30 KB"},
    {"title": "Star Wars", "year": 1977, "monitored": True, "releaseGroup": "SPARKS",
     "videoCodec": "x264", "rawSize": None, "size": None},
]


def titles(rows):
    return [row["title"] for row in rows]


class TestFieldResolution(unittest.TestCase):
    def setUp(self):
        self.ql = FilterQL(RADARR_SCHEMA)

    def test_names_and_aliases(self):
        self.assertEqual(self.ql.resolve_field("releaseGroup"), "releaseGroup")
        self.assertEqual(self.ql.resolve_field("rg"), "releaseGroup")
        self.assertEqual(self.ql.resolve_field("y"), "year")
        self.assertIsNone(self.ql.resolve_field("nope"))

    def test_unknown_field_suggests_closest(self):
        with self.assertRaises(UnknownFieldError) as ctx:
            self.ql.require_field("titel")
        self.assertEqual(ctx.exception.suggestion, "title")
        self.assertEqual(str(ctx.exception), "Unknown field 'titel', did you mean 'title'?")

    def test_unknown_field_without_suggestion(self):
        with self.assertRaises(UnknownFieldError) as ctx:
            self.ql.require_field("zzzzzz", "SORT")
        self.assertIsNone(ctx.exception.suggestion)
        self.assertEqual(str(ctx.exception), "Unknown field 'zzzzzz' for operation 'SORT'")

    def test_season_only_exists_when_split(self):
        self.assertIsNone(FilterQL(sonarr_schema()).resolve_field("season"))
        self.assertEqual(FilterQL(sonarr_schema(by_season=True)).resolve_field("s"), "season")
        self.assertIsNone(FilterQL(sonarr_schema(by_season=True)).resolve_field("episode"))
        self.assertEqual(FilterQL(sonarr_schema(by_episode=True)).resolve_field("e"), "episode")


class TestParse(unittest.TestCase):
    def setUp(self):
        self.ql = FilterQL(RADARR_SCHEMA)

    def test_empty_query(self):
        for text in (None, "", "   "):
            query = self.ql.parse(text)
            self.assertIsNone(query.filter)
            self.assertEqual(query.operations, [])

    def test_comparison_with_alias(self):
        query = self.ql.parse("rg == FLUX")
        self.assertEqual(query.filter, Comparison("releaseGroup", "==", "FLUX"))

    def test_operators_without_spaces(self):
        self.assertEqual(self.ql.parse("year>=2000").filter, Comparison("year", ">=", "2000"))
        self.assertEqual(self.ql.parse("year<2000").filter, Comparison("year", "<", "2000"))

    def test_quoted_values(self):
        query = self.ql.parse('title == "say \\"hi\\" (again)"')
        self.assertEqual(query.filter, Comparison("title", "==", 'say "hi" (again)'))

    def test_and_binds_tighter_than_or(self):
        query = self.ql.parse("monitored || rg && !vc")
        self.assertEqual(
            query.filter,
            Or(Truthy("monitored"), And(Truthy("releaseGroup"), Not(Truthy("videoCodec")))),
        )

    def test_parentheses(self):
        query = self.ql.parse("(monitored || rg) && vc")
        self.assertEqual(
            query.filter,
            And(Or(Truthy("monitored"), Truthy("releaseGroup")), Truthy("videoCodec")),
        )

    def test_operations(self):
        query = self.ql.parse("* | sort size desc | EXCLUDE rg year")
        self.assertEqual(query.filter, MatchAll())
        self.assertEqual(query.operations, [
            Operation("SORT", ("size", "desc")),
            Operation("EXCLUDE", ("rg", "year")),
        ])

    def test_operations_without_filter(self):
        query = self.ql.parse("| LIMIT 1")
        self.assertIsNone(query.filter)
        self.assertEqual(query.operations, [Operation("LIMIT", ("1",))])

    def test_syntax_errors(self):
        for text in ("title ==", "(title", 'title == "open', "&& title", "title == a b", "title == )"):
            with self.subTest(text=text):
                with self.assertRaises(QuerySyntaxError):
                    self.ql.parse(text)

    def test_error_mentions_position(self):
        with self.assertRaises(QuerySyntaxError) as ctx:
            self.ql.parse("title ==")
        self.assertEqual(str(ctx.exception), "expected a value after '==' but found end of query at position 8")

    def test_invalid_regex_is_a_syntax_error(self):
        with self.assertRaises(QuerySyntaxError):
            self.ql.parse('title ~= "("')

    def test_unknown_field_in_filter(self):
        with self.assertRaises(UnknownFieldError):
            self.ql.parse("titel == Dune")

    def test_tokens(self):
        kinds = [t.kind for t in tokenize('!(a *= "b") | X')]
        self.assertEqual(kinds, ["NOT", "LPAREN", "WORD", "OP", "STRING", "RPAREN", "PIPE", "WORD", "EOF"])


class TestFilter(unittest.TestCase):
    def setUp(self):
        self.ql = FilterQL(RADARR_SCHEMA)

    def query(self, text):
        return titles(self.ql.query(ROWS, text))

    def test_match_all(self):
        self.assertEqual(self.query("*"), titles(ROWS))
        self.assertEqual(self.query(""), titles(ROWS))

    def test_text_operators_ignore_case(self):
        self.assertEqual(self.query("title == dune"), ["Dune"])
        self.assertEqual(self.query("title != dune"), ["The Lord of the Rings", "Star Wars"])
        self.assertEqual(self.query('title *= "of the"'), ["The Lord of the Rings"])
        self.assertEqual(self.query("title ^= STAR"), ["Star Wars"])
        self.assertEqual(self.query("title $= rings"), ["The Lord of the Rings"])
        self.assertEqual(self.query('title ~= "^(dune|star)"'), ["Dune", "Star Wars"])

    def test_fuzzy_match(self):
        self.assertEqual(self.query('title %= "lord of rings"'), ["The Lord of the Rings"])

    def test_numeric_comparisons(self):
        self.assertEqual(self.query("year >= 2001"), ["Dune", "The Lord of the Rings"])
        self.assertEqual(self.query("year < 2001"), ["Star Wars"])
        self.assertEqual(self.query("year == 2021.0"), ["Dune"])

    def test_boolean_fields(self):
        self.assertEqual(self.query("monitored"), ["Dune", "Star Wars"])
        self.assertEqual(self.query("!monitored"), ["The Lord of the Rings"])
        self.assertEqual(self.query("monitored == false"), ["The Lord of the Rings"])
        self.assertEqual(self.query("m != TRUE"), ["The Lord of the Rings"])

    def test_missing_values(self):
        self.assertEqual(self.query('rg == ""'), ["The Lord of the Rings"])
        self.assertEqual(self.query("rawSize > 0"), ["Dune", "The Lord of the Rings"])
        self.assertEqual(self.query("rawSize <= 100000"), ["Dune", "The Lord of the Rings"])

    def test_combined(self):
        self.assertEqual(self.query("vc == x264 && (monitored || year > 2000)"), ["The Lord of the Rings", "Star Wars"])
        self.assertEqual(self.query("!(vc == x264) || rg == sparks"), ["Dune", "Star Wars"])

    def test_zero_padded_numbers(self):
        ql = FilterQL(sonarr_schema(by_episode=True))
        rows = [{"title": "A", "season": "01", "episode": "10"}, {"title": "B", "season": "10", "episode": "02"}]
        self.assertEqual(titles(ql.query(rows, "season == 1")), ["A"])
        self.assertEqual(titles(ql.query(rows, "s > 9")), ["B"])
        self.assertEqual(titles(ql.query(rows, "e >= 3")), ["A"])

    def test_limit(self):
        self.assertEqual(self.query("* | LIMIT 2"), ["Dune", "The Lord of the Rings"])
        self.assertEqual(self.query("| limit 0"), [])
        with self.assertRaises(OperationError):
            self.query("| LIMIT two")

    def test_unknown_operation(self):
        with self.assertRaises(UnknownOperationError) as ctx:
            self.query("| SHUFFLE")
        self.assertIn("SHUFFLE", str(ctx.exception))

    def test_custom_operations_are_case_insensitive(self):
        ql = FilterQL(RADARR_SCHEMA, {"first": lambda rows, args, ql: rows[:1]})
        self.assertEqual(titles(ql.query(ROWS, "| FIRST")), ["Dune"])

    def test_rows_are_not_modified(self):
        before = [dict(row) for row in ROWS]
        self.ql.query(ROWS, "monitored | LIMIT 1")
        self.assertEqual(ROWS, before)


class TestValueHelpers(unittest.TestCase):
    def test_natural_key(self):
        values = ["Episode 10", "episode 2", "Épisode 1"]
        self.assertEqual(sorted(values, key=natural_key), ["Épisode 1", "episode 2", "Episode 10"])

    def test_natural_key_ignores_punctuation(self):
        self.assertEqual(natural_key("Spider-Man"), natural_key("spider man"))

    def test_natural_key_keeps_separated_numbers_apart(self):
        self.assertLess(natural_key("1.5"), natural_key("2"))
        self.assertLess(natural_key("a,9"), natural_key("a,10"))
        self.assertLess(natural_key("345600,921600"), natural_key("2073600"))
        self.assertEqual(natural_key("1.5"), ((0, 1, ""), (0, 5, "")))

    def test_ordering_on_joined_numbers(self):
        ql = FilterQL(sonarr_schema())
        rows = [{"title": "SD", "rawResolution": "345600,921600"}, {"title": "HD", "rawResolution": "2073600"}]
        self.assertEqual(titles(ql.query(rows, "rawResolution > 1000000")), ["HD"])
        self.assertEqual(titles(ql.query(rows, "rawResolution < 1000000")), ["SD"])

    def test_compare_text_ordering(self):
        self.assertTrue(compare("string", "10 files", ">", "2 files"))
        self.assertFalse(compare("string", None, "<", "a"))

    def test_compare_unparseable_number_falls_back_to_text(self):
        self.assertTrue(compare("number", "2,6", "*=", "6"))
        self.assertTrue(compare("number", "2,6", "==", "2,6"))


if __name__ == "__main__":
    unittest.main()
