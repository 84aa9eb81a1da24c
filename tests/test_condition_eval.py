import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from condition_eval import (
    ConditionDepthError,
    ConditionSchemaError,
    TypeErrorInCondition,
    UnknownOpError,
    VarResolveError,
    check_condition,
    eval_condition,
)


class TestConditionEval(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = {
            "input": {"ticket": {"priority": "high", "score": 7}, "email": "ops@acme.io"},
            "steps": {
                "classify": {"label": "billing", "tags": ["refund", "urgent"]},
                "fetch": {"rows": [{"status": "ok"}, {"status": "fail"}]},
            },
            "variables": {"threshold": 5},
        }

    def test_and_or_not_empty(self) -> None:
        self.assertTrue(eval_condition({"op": "and", "children": []}, self.ctx))
        self.assertFalse(eval_condition({"op": "or", "children": []}, self.ctx))
        self.assertTrue(
            eval_condition(
                {"op": "not", "children": [{"op": "eq", "left": {"literal": 1}, "right": {"literal": 2}}]},
                self.ctx,
            )
        )

    def test_eq_against_step_output(self) -> None:
        cond = {"op": "eq", "left": {"var": "steps.classify.label"}, "right": {"literal": "billing"}}
        self.assertTrue(eval_condition(cond, self.ctx))
        cond = {"op": "neq", "left": {"var": "input.ticket.priority"}, "right": {"literal": "low"}}
        self.assertTrue(eval_condition(cond, self.ctx))

    def test_numeric_comparison_with_variables(self) -> None:
        cond = {"op": "gt", "left": {"var": "input.ticket.score"}, "right": {"var": "variables.threshold"}}
        self.assertTrue(eval_condition(cond, self.ctx))
        cond = {"op": "lte", "left": {"literal": 5}, "right": {"var": "variables.threshold"}}
        self.assertTrue(eval_condition(cond, self.ctx))

    def test_bracket_paths(self) -> None:
        cond = {"op": "eq", "left": {"var": "steps['fetch'].rows[1].status"}, "right": {"literal": "fail"}}
        self.assertTrue(eval_condition(cond, self.ctx))

    def test_contains_and_starts_with(self) -> None:
        cond = {"op": "contains", "left": {"var": "steps.classify.tags"}, "right": {"literal": "urgent"}}
        self.assertTrue(eval_condition(cond, self.ctx))
        cond = {"op": "starts_with", "left": {"var": "input.email"}, "right": {"literal": "ops@"}}
        self.assertTrue(eval_condition(cond, self.ctx))
        cond = {"op": "starts_with", "left": {"literal": 1}, "right": {"literal": "1"}}
        with self.assertRaises(TypeErrorInCondition):
            eval_condition(cond, self.ctx)

    def test_in_not_in(self) -> None:
        cond = {
            "op": "in",
            "left": {"var": "input.ticket.priority"},
            "right": {"array": [{"literal": "high"}, {"literal": "critical"}]},
        }
        self.assertTrue(eval_condition(cond, self.ctx))
        cond = {"op": "not_in", "left": {"literal": "low"}, "right": {"literal": ["high"]}}
        self.assertTrue(eval_condition(cond, self.ctx))

    def test_exists_does_not_raise_on_missing(self) -> None:
        self.assertTrue(eval_condition({"op": "exists", "left": {"var": "steps.classify"}}, self.ctx))
        self.assertTrue(eval_condition({"op": "not_exists", "left": {"var": "steps.review.approved"}}, self.ctx))
        self.assertFalse(eval_condition({"op": "truthy", "left": {"var": "steps.review"}}, self.ctx))

    def test_all_any_bind_item(self) -> None:
        where = {"op": "eq", "left": {"var": "item.status"}, "right": {"literal": "fail"}}
        self.assertTrue(eval_condition({"op": "any", "over": {"var": "steps.fetch.rows"}, "where": where}, self.ctx))
        self.assertFalse(eval_condition({"op": "all", "over": {"var": "steps.fetch.rows"}, "where": where}, self.ctx))
        self.assertTrue(eval_condition({"op": "all", "over": {"literal": []}, "where": where}, self.ctx))

    def test_depth_limit(self) -> None:
        leaf = {"op": "eq", "left": {"literal": 1}, "right": {"literal": 1}}
        cond = {"op": "not", "children": [{"op": "not", "children": [{"op": "not", "children": [leaf]}]}]}
        with self.assertRaises(ConditionDepthError):
            eval_condition(cond, self.ctx, depth_limit=2)

    def test_unresolved_var(self) -> None:
        cond = {"op": "eq", "left": {"var": "steps.missing.value"}, "right": {"literal": 1}}
        with self.assertRaises(VarResolveError) as ctx:
            eval_condition(cond, self.ctx)
        self.assertEqual(ctx.exception.code, "CONDITION_VAR_UNRESOLVED")

    def test_type_errors(self) -> None:
        with self.assertRaises(TypeErrorInCondition):
            eval_condition({"op": "gt", "left": {"literal": "a"}, "right": {"literal": "b"}}, self.ctx)
        with self.assertRaises(TypeErrorInCondition):
            eval_condition({"op": "gt", "left": {"literal": True}, "right": {"literal": 0}}, self.ctx)
        with self.assertRaises(TypeErrorInCondition):
            eval_condition({"op": "in", "left": {"literal": 1}, "right": {"literal": 2}}, self.ctx)

    def test_schema_and_unknown_op(self) -> None:
        with self.assertRaises(ConditionSchemaError):
            eval_condition({"op": "and"}, self.ctx)
        with self.assertRaises(ConditionSchemaError):
            eval_condition({"op": "eq", "left": "raw", "right": {"literal": 1}}, self.ctx)
        with self.assertRaises(UnknownOpError):
            eval_condition({"op": "matches", "left": {"literal": 1}}, self.ctx)
        with self.assertRaises(ConditionSchemaError):
            eval_condition({"op": ["eq"], "left": {"literal": 1}, "right": {"literal": 1}}, self.ctx)


class TestCheckCondition(unittest.TestCase):
    def test_collects_var_paths(self) -> None:
        cond = {
            "op": "and",
            "children": [
                {"op": "eq", "left": {"var": "steps.classify.label"}, "right": {"literal": "x"}},
                {"op": "exists", "left": {"var": "input.ticket"}},
            ],
        }
        issues, var_paths = check_condition(cond)
        self.assertEqual(issues, [])
        self.assertEqual(var_paths, ["steps.classify.label", "input.ticket"])

    def test_quantifier_where_vars_are_not_collected(self) -> None:
        cond = {
            "op": "any",
            "over": {"var": "steps.fetch.rows"},
            "where": {"op": "eq", "left": {"var": "item.status"}, "right": {"literal": "fail"}},
        }
        issues, var_paths = check_condition(cond)
        self.assertEqual(issues, [])
        self.assertEqual(var_paths, ["steps.fetch.rows"])

    def test_reports_issues_with_paths(self) -> None:
        cond = {"op": "or", "children": [{"op": "bogus"}, {"op": "eq", "left": {"literal": 1}}]}
        issues, _ = check_condition(cond)
        codes = [(issue["code"], issue["path"]) for issue in issues]
        self.assertIn(("CONDITION_UNKNOWN_OP", "$.children[0]"), codes)
        self.assertIn(("CONDITION_SCHEMA_ERROR", "$.children[1]"), codes)

    def test_not_requires_single_child(self) -> None:
        issues, _ = check_condition({"op": "not", "children": []})
        self.assertEqual(issues[0]["code"], "CONDITION_SCHEMA_ERROR")

    def test_non_string_op(self) -> None:
        for op in (["eq"], {"name": "eq"}, 3):
            issues, _ = check_condition({"op": op, "left": {"literal": 1}, "right": {"literal": 1}})
            self.assertEqual([(i["code"], i["path"]) for i in issues], [("CONDITION_SCHEMA_ERROR", "$.op")])


if __name__ == "__main__":
    unittest.main()
