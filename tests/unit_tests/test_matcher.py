"""
Unit tests for the template matcher.
"""

import random
import unittest

from matcher import NoConfigurationError, TemplateMatcher, matches
from models import NodeMode, WorkerTemplate, parse_labels


def make_template(prefix, labels="", mode=NodeMode.NORMAL):
    return WorkerTemplate(
        name_prefix=prefix, description=prefix.upper(), zone="us-central1-a", labels=labels, mode=mode
    )


class TestMatches(unittest.TestCase):
    """Test label matching rules."""

    def test_normal_template_matches_empty_label(self):
        self.assertTrue(matches(make_template("a", "linux"), None))
        self.assertTrue(matches(make_template("a", "linux"), ""))

    def test_exclusive_template_never_matches_empty_label(self):
        self.assertFalse(matches(make_template("a", "linux", NodeMode.EXCLUSIVE), None))
        self.assertFalse(matches(make_template("a", "", NodeMode.EXCLUSIVE), "  "))

    def test_label_intersection(self):
        template = make_template("a", "linux docker")
        self.assertTrue(matches(template, "docker"))
        self.assertTrue(matches(template, "windows docker"))
        self.assertFalse(matches(template, "windows"))

    def test_normal_unlabeled_template_matches_anything(self):
        self.assertTrue(matches(make_template("a"), "gpu"))

    def test_exclusive_unlabeled_template_matches_nothing(self):
        self.assertFalse(matches(make_template("a", mode=NodeMode.EXCLUSIVE), "gpu"))

    def test_matcher_never_returns_non_matching_template(self):
        """Test every returned candidate satisfies the matching rule."""
        rng = random.Random(3)
        atoms = ["linux", "windows", "gpu", "docker", "arm"]
        templates = []
        for i in range(12):
            labels = " ".join(rng.sample(atoms, rng.randint(0, 2)))
            mode = rng.choice([NodeMode.NORMAL, NodeMode.EXCLUSIVE])
            templates.append(make_template(f"t{i}", labels, mode))
        matcher = TemplateMatcher(templates, rng)

        for _ in range(200):
            label = " ".join(rng.sample(atoms, rng.randint(0, 2)))
            for template in matcher.candidates(label):
                wanted = parse_labels(label)
                if not wanted:
                    self.assertEqual(template.mode, NodeMode.NORMAL)
                elif template.label_set:
                    self.assertTrue(template.label_set & wanted)
                else:
                    self.assertEqual(template.mode, NodeMode.NORMAL)
            chosen = matcher.match(label)
            if chosen is not None:
                self.assertTrue(matches(chosen, label))


class TestTemplateMatcher(unittest.TestCase):
    """Test TemplateMatcher lookups."""

    def setUp(self):
        self.linux = make_template("linux", "linux")
        self.gpu = make_template("gpu", "gpu", NodeMode.EXCLUSIVE)
        self.matcher = TemplateMatcher([self.linux, self.gpu], random.Random(0))

    def test_match_returns_candidate(self):
        self.assertIs(self.matcher.match("gpu"), self.gpu)
        self.assertIs(self.matcher.match(None), self.linux)
        self.assertIsNone(self.matcher.match("windows"))

    def test_candidates_are_shuffled_per_call(self):
        templates = [make_template(f"t{i}", "linux") for i in range(8)]
        matcher = TemplateMatcher(templates, random.Random(11))
        orders = {tuple(t.name_prefix for t in matcher.candidates("linux")) for _ in range(10)}
        self.assertGreater(len(orders), 1)

    def test_require_raises_when_nothing_matches(self):
        with self.assertRaises(NoConfigurationError):
            self.matcher.require("windows", "gce-fleet")

    def test_require_raises_without_templates(self):
        with self.assertRaises(NoConfigurationError) as ctx:
            TemplateMatcher([]).require("linux", "gce-fleet")
        self.assertIn("does not have any defined", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
