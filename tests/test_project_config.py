import json
import unittest

from flagkit.entities import LeafNode, OperatorNode
from flagkit.errors import InvalidDatafileError, NotFoundError
from flagkit.project_config import ProjectConfig, build_audience_condition_tree, build_condition_tree

from tests.helpers import load_config, load_datafile


class TestParsing(unittest.TestCase):
    def test_accepted_inputs(self):
        d = load_datafile()
        for label, datafile in [
            ("dict", d),
            ("str", json.dumps(d)),
            ("bytes", json.dumps(d).encode("utf-8")),
        ]:
            with self.subTest(label):
                c = ProjectConfig.from_datafile(datafile)
                self.assertEqual(c.revision, "42")
                self.assertEqual(c.project_id, "proj1")
                self.assertEqual(c.account_id, "acc1")
                self.assertTrue(c.anonymize_ip)
                self.assertTrue(c.bot_filtering)
                self.assertFalse(c.send_flag_decisions)
                self.assertEqual(c.sdk_key, "sdk-key-1")
                self.assertEqual(c.environment_key, "production")
                self.assertEqual(json.loads(c.datafile), d)

    def test_invalid_datafiles(self):
        d = load_datafile()
        missing_revision = dict(d)
        del missing_revision["revision"]
        bad_traffic = load_datafile()
        bad_traffic["experiments"][0]["trafficAllocation"][0]["endOfRange"] = 10001

        cases = [
            (b"\xff\xfe", "not valid UTF-8"),
            ("{not json", "not valid JSON"),
            ("[]", "must be a JSON object"),
            (load_datafile(version="1"), "unsupported datafile version '1'"),
            (load_datafile(version="2"), "unsupported datafile version '2'"),
            (load_datafile(version="3"), "unsupported datafile version '3'"),
            (load_datafile(version="5"), "unsupported datafile version '5'"),
            (load_datafile(version=4), "unsupported datafile version 4"),
            (missing_revision, "failed validation: 'revision' is a required property"),
            (bad_traffic, "failed validation"),
            (load_datafile(audiences=[{"id": "x", "conditions": "[not json"}]), "invalid audience conditions"),
        ]
        for datafile, msg in cases:
            with self.subTest(msg):
                with self.assertRaisesRegex(InvalidDatafileError, msg):
                    ProjectConfig.from_datafile(datafile)

    def test_invalid_datafile_is_a_value_error(self):
        with self.assertRaises(ValueError):
            ProjectConfig.from_datafile("{}")

    def test_optional_fields_default(self):
        d = load_datafile()
        for k in ["botFiltering", "sendFlagDecisions", "sdkKey", "environmentKey", "typedAudiences", "integrations"]:
            del d[k]
        c = ProjectConfig.from_datafile(d)
        self.assertIsNone(c.bot_filtering)
        self.assertFalse(c.send_flag_decisions)
        self.assertEqual(c.sdk_key, "")
        self.assertEqual(c.integrations, [])
        # Without typed audiences the legacy aud_and is used.
        self.assertEqual(c.get_audience_by_id("aud_and").name, "overridden by the typed audience")


class TestIndices(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.config = load_config()

    def test_experiments(self):
        c = self.config
        self.assertEqual(
            list(c.experiments),
            [
                "exp_ab",
                "exp_paused",
                "exp_audience",
                "exp_legacy",
                "feature_test",
                "feature_test_2",
                "cmab_experiment",
                "group_exp_1",
                "group_exp_2",
            ],
        )
        self.assertEqual(c.get_experiment_id_by_key("exp_ab"), "1886780721")
        self.assertEqual(c.get_experiment_by_id("1886780721").key, "exp_ab")
        self.assertEqual(c.get_experiment_by_key("group_exp_2").group_id, "1886780722")
        self.assertEqual(c.get_experiment_by_key("exp_ab").group_id, "")
        self.assertEqual(c.get_experiment_by_key("exp_ab").get_variation_by_key("B").id, "var_b")
        self.assertIsNone(c.get_experiment_by_key("exp_ab").get_variation_by_key("C"))
        self.assertTrue(c.get_experiment_by_key("exp_legacy").is_running())
        self.assertFalse(c.get_experiment_by_key("exp_paused").is_running())

    def test_rollout_rules_are_reachable_by_id_only(self):
        c = self.config
        self.assertEqual(c.get_experiment_by_id("r2").key, "everyone_else")
        with self.assertRaises(NotFoundError):
            c.get_experiment_by_key("everyone_else")
        self.assertEqual([r.id for r in c.get_rollout_by_id("rollout_1").experiments], ["r1", "r2"])

    def test_cmab(self):
        exp = self.config.get_experiment_by_key("cmab_experiment")
        self.assertEqual(exp.cmab.attribute_ids, ["a3", "a4"])
        self.assertEqual(exp.cmab.traffic_allocation, 10000)
        self.assertIsNone(self.config.get_experiment_by_key("exp_ab").cmab)

    def test_audiences(self):
        c = self.config
        self.assertEqual(c.get_audience_by_id("aud_and").name, "Foo and true")
        self.assertEqual(
            c.get_audience_by_id("aud_legacy").condition_tree,
            build_condition_tree(json.loads(load_datafile()["audiences"][0]["conditions"])),
        )

    def test_audience_condition_trees(self):
        c = self.config
        self.assertEqual(
            c.get_experiment_by_key("exp_audience").audience_condition_tree,
            OperatorNode(op="and", children=[LeafNode(item="aud_and")]),
        )
        self.assertEqual(
            c.get_experiment_by_key("exp_legacy").audience_condition_tree,
            OperatorNode(op="or", children=[LeafNode(item="aud_legacy")]),
        )
        self.assertIsNone(c.get_experiment_by_key("exp_ab").audience_condition_tree)

    def test_features(self):
        c = self.config
        f = c.get_feature_by_key("feat_fallthrough")
        self.assertIs(c.get_feature_by_id("f1"), f)
        self.assertEqual([e.key for e in f.feature_experiments], ["feature_test"])
        self.assertEqual(f.rollout.id, "rollout_1")
        self.assertIsNone(c.get_feature_by_key("feat_no_rollout").rollout)
        self.assertEqual(list(f.variables), ["greeting", "count", "ratio", "flag", "payload"])
        payload = c.get_variable_by_key("feat_fallthrough", "payload")
        self.assertEqual(payload.type, "json")
        self.assertEqual(payload.sub_type, "json")
        self.assertEqual(c.get_feature_keys_for_experiment("exp_ft"), ["feat_fallthrough"])
        self.assertEqual(c.get_feature_keys_for_experiment("1886780721"), [])
        self.assertTrue(c.is_feature_experiment("exp_ft"))
        self.assertFalse(c.is_feature_experiment("1886780721"))

    def test_entities_are_shared(self):
        c = self.config
        self.assertIs(c.get_experiment_by_key("exp_ab"), c.get_experiment_by_id("1886780721"))
        f = c.get_feature_by_key("feat_fallthrough")
        self.assertIs(f.feature_experiments[0], c.get_experiment_by_id("exp_ft"))
        self.assertIs(f.rollout, c.get_rollout_by_id("rollout_1"))

    def test_flag_variations(self):
        c = self.config
        self.assertEqual([v.id for v in c.get_flag_variations("feat_fallthrough")], ["ft_var", "r1_var", "r2_var"])
        self.assertEqual(c.get_flag_variation_by_key("feat_fallthrough", "r2_on").id, "r2_var")
        self.assertIsNone(c.get_flag_variation_by_key("feat_fallthrough", "B"))
        self.assertEqual(c.get_flag_variations("missing"), [])

    def test_attributes_and_events(self):
        c = self.config
        self.assertEqual(c.get_attribute_by_key("age").id, "a3")
        self.assertEqual(c.get_attribute_key_by_id("a4"), "browser")
        self.assertEqual(c.get_event_by_key("purchase").id, "ev_purchase")
        self.assertEqual(c.integrations[0].public_key, "pk-1")

    def test_not_found(self):
        c = self.config
        cases = [
            (c.get_feature_by_key, ("nope",), 'feature with key "nope" not found'),
            (c.get_feature_by_id, ("nope",), 'feature with id "nope" not found'),
            (c.get_experiment_by_key, ("nope",), 'experiment with key "nope" not found'),
            (c.get_experiment_by_id, ("nope",), 'experiment with id "nope" not found'),
            (c.get_experiment_id_by_key, ("nope",), 'experiment with key "nope" not found'),
            (c.get_event_by_key, ("nope",), 'event with key "nope" not found'),
            (c.get_attribute_by_key, ("nope",), 'attribute with key "nope" not found'),
            (c.get_attribute_key_by_id, ("nope",), 'attribute with id "nope" not found'),
            (c.get_audience_by_id, ("nope",), 'audience with id "nope" not found'),
            (c.get_group_by_id, ("nope",), 'group with id "nope" not found'),
            (c.get_rollout_by_id, ("nope",), 'rollout with id "nope" not found'),
            (c.get_variable_by_key, ("feat_fallthrough", "nope"), 'variable with key "nope" not found'),
            (c.get_variable_by_key, ("nope", "greeting"), 'feature with key "nope" not found'),
        ]
        for fn, args, msg in cases:
            with self.subTest(msg):
                with self.assertRaisesRegex(NotFoundError, msg):
                    fn(*args)


class TestConditionCompilation(unittest.TestCase):
    def test_compile(self):
        cases = [
            ([], None),
            (["or"], OperatorNode(op="or", children=[])),
            (["a", "b"], OperatorNode(op="or", children=[LeafNode(item="a"), LeafNode(item="b")])),
            (
                ["not", ["and", "a", "b"]],
                OperatorNode(op="not", children=[OperatorNode(op="and", children=[LeafNode(item="a"), LeafNode(item="b")])]),
            ),
        ]
        for raw, expected in cases:
            with self.subTest(raw):
                self.assertEqual(build_audience_condition_tree(raw), expected)

    def test_string_leaves_are_dropped_in_audience_conditions(self):
        tree = build_condition_tree(["and", "stray", {"type": "custom_attribute", "name": "x", "value": 1}])
        self.assertEqual(len(tree.children), 1)
        self.assertEqual(tree.children[0].item.name, "x")
        self.assertIsNone(tree.children[0].item.match)


class TestSerialization(unittest.TestCase):
    def test_to_datafile_round_trip(self):
        c = load_config()
        c2 = ProjectConfig.from_datafile(c.to_datafile())
        for attr in [
            "version",
            "account_id",
            "project_id",
            "revision",
            "anonymize_ip",
            "bot_filtering",
            "sdk_key",
            "environment_key",
            "send_flag_decisions",
            "attributes",
            "audiences",
            "events",
            "experiments",
            "features",
            "groups",
            "rollouts",
            "integrations",
        ]:
            with self.subTest(attr):
                self.assertEqual(getattr(c2, attr), getattr(c, attr))

    def test_grouped_experiments_are_only_emitted_under_groups(self):
        d = load_config().to_datafile()
        self.assertNotIn("group_exp_1", [e["key"] for e in d["experiments"]])
        self.assertEqual([e["key"] for e in d["groups"][0]["experiments"]], ["group_exp_1", "group_exp_2"])

    def test_summary(self):
        c = load_config()
        summary = c.to_summary()
        self.assertEqual(summary["revision"], "42")
        self.assertEqual(summary["datafile"], c.datafile)
        self.assertEqual(list(summary["experiments_map"]), list(c.experiments))
        self.assertEqual(list(summary["features_map"]), list(c.features))

        exp_ab = summary["experiments_map"]["exp_ab"]
        self.assertEqual(exp_ab["id"], "1886780721")
        self.assertEqual(exp_ab["variations_map"]["B"], {"id": "var_b", "key": "B", "feature_enabled": False, "variables_map": {}})

        feature = summary["features_map"]["feat_fallthrough"]
        self.assertEqual(feature["id"], "f1")
        self.assertEqual(list(feature["experiments_map"]), ["feature_test"])
        self.assertEqual(feature["variables_map"]["greeting"], {"id": "v_str", "key": "greeting", "type": "string", "value": "hello"})
        self.assertEqual(feature["variables_map"]["payload"]["type"], "json")

        # Feature test variations resolve their overrides over the defaults.
        variables = summary["experiments_map"]["feature_test"]["variations_map"]["ft_on"]["variables_map"]
        self.assertEqual(variables["greeting"]["value"], "from test")
        self.assertEqual(variables["count"]["value"], "1")
        self.assertEqual(feature["experiments_map"]["feature_test"], summary["experiments_map"]["feature_test"])

    def test_summary_of_disabled_variation_uses_defaults(self):
        d = load_datafile()
        feature_test = next(e for e in d["experiments"] if e["key"] == "feature_test")
        feature_test["variations"][0]["featureEnabled"] = False
        variation = ProjectConfig.from_datafile(d).to_summary()["experiments_map"]["feature_test"]["variations_map"]["ft_on"]
        self.assertFalse(variation["feature_enabled"])
        self.assertEqual(variation["variables_map"]["greeting"]["value"], "hello")

    def test_bytes_round_trip(self):
        c = load_config()
        c2 = ProjectConfig.from_bytes(c.to_bytes())
        self.assertEqual(c2.revision, c.revision)
        self.assertEqual(c2.experiments, c.experiments)
        self.assertEqual(c2.features, c.features)
        self.assertEqual(c2.get_experiment_by_id("r2"), c.get_experiment_by_id("r2"))
        self.assertEqual(c2.datafile, c.datafile)


if __name__ == "__main__":
    unittest.main()
