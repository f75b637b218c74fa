import unittest

from cheattriage.keywords import KeywordMatcher, basename_without_extension
from cheattriage.models import KeywordSet


class TestKeywordMatcher(unittest.TestCase):

    def setUp(self):
        self.matcher = KeywordMatcher(KeywordSet(
            patterns=("cheat", "aimbot", "cheat engine"),
            exact_match=frozenset({"x22cheats"}),
        ))

    def test_word_boundaries(self):
        self.assertTrue(self.matcher.contains_keyword("my-cheat-tool.exe"))
        self.assertTrue(self.matcher.contains_keyword("C:\\Games\\Cheat\\run.exe"))
        self.assertFalse(self.matcher.contains_keyword("cheater"))
        self.assertFalse(self.matcher.contains_keyword("uncheatable"))

    def test_empty_input_never_matches(self):
        self.assertFalse(self.matcher.contains_keyword(""))
        self.assertFalse(self.matcher.contains_keyword(None))
        self.assertIsNone(self.matcher.find_keyword(None))

    def test_first_declared_pattern_wins(self):
        self.assertEqual(self.matcher.find_keyword("Cheat Engine 7.5"), "cheat")
        self.assertEqual(self.matcher.find_keyword("aimbots"), None)
        self.assertEqual(self.matcher.find_keyword("best_aimbot"), "aimbot")
        self.assertEqual(self.matcher.find_keyword("best aimbot"), "aimbot")

    def test_exact_basename(self):
        self.assertTrue(self.matcher.contains_keyword("D:\\Downloads\\X22Cheats.exe"))
        self.assertTrue(self.matcher.contains_keyword("/tmp/x22cheats"))
        self.assertEqual(self.matcher.find_keyword("D:\\Downloads\\X22Cheats.exe"), "x22cheats")
        self.assertFalse(self.matcher.contains_keyword("x22cheats_loader.exe"))

    def test_leading_dot_is_not_an_extension(self):
        self.assertEqual(basename_without_extension(".bashrc"), ".bashrc")
        self.assertEqual(basename_without_extension("a/b\\tool.tar.gz"), "tool.tar")

    def test_tag(self):
        self.assertEqual(self.matcher.tag("nothing here", "aimbot.exe"), "{aimbot} ")
        self.assertEqual(self.matcher.tag("nothing here"), "")

    def test_keywords_property(self):
        self.assertEqual(self.matcher.keywords, ("cheat", "aimbot", "cheat engine"))


if __name__ == "__main__":
    unittest.main()
