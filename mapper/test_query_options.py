import itertools
import unittest

from query_options import OPTION_KEYS, split_options

SAMPLE_OPTIONS = {
    "fields": ["title", "author"],
    "skip": 5,
    "limit": 10,
    "sort": [("title", 1)],
    "hint": "title_1",
    "snapshot": True,
    "timeout": False,
}


class TestSplitOptions(unittest.TestCase):
    def test_every_subset_of_options(self):
        filter_part = {"author": "Le Guin", "year": {"$gt": 1970}}
        for size in range(len(OPTION_KEYS) + 1):
            for keys in itertools.combinations(OPTION_KEYS, size):
                conditions = dict(filter_part)
                conditions.update({k: SAMPLE_OPTIONS[k] for k in keys})

                query_filter, options = split_options(conditions)

                self.assertEqual(query_filter, filter_part)
                self.assertEqual(set(options), set(keys))
                for k in keys:
                    self.assertIs(options[k], SAMPLE_OPTIONS[k])

    def test_falsy_option_values_are_still_options(self):
        query_filter, options = split_options({"skip": 0, "limit": 0, "fields": [], "timeout": False, "x": 1})
        self.assertEqual(query_filter, {"x": 1})
        self.assertEqual(options, {"skip": 0, "limit": 0, "fields": [], "timeout": False})

    def test_missing_fields_means_all_fields(self):
        _, options = split_options({"title": "Dune"})
        self.assertNotIn("fields", options)

    def test_input_is_not_mutated(self):
        conditions = {"title": "Dune", "limit": 3}
        split_options(conditions)
        self.assertEqual(conditions, {"title": "Dune", "limit": 3})

    def test_empty_and_none(self):
        self.assertEqual(split_options(None), ({}, {}))
        self.assertEqual(split_options({}), ({}, {}))


if __name__ == "__main__":
    unittest.main()
