import unittest

from ruleflags import (
    FALSE,
    TRUE,
    And,
    Boolean,
    Concat,
    Context,
    ContextRef,
    Eq,
    Evaluator,
    ExprRef,
    GreaterThan,
    Integer,
    LessThan,
    Mod,
    Negate,
    Not,
    Or,
    String,
    Sum,
    literal,
    matches,
)


class TestContext(unittest.TestCase):
    def test_resolve_walks_parents(self):
        server = Context.create(environment="prod", region="eu")
        request = server.child().set("user_id", 7).set("region", "us")

        self.assertEqual(request.resolve("environment"), String("prod"))
        self.assertEqual(request.resolve("region"), String("us"))
        self.assertEqual(server.resolve("region"), String("eu"))
        self.assertEqual(request.resolve("user_id"), Integer(7))
        self.assertIs(request.parent, server)
        self.assertIn("environment", request)
        self.assertNotIn("user_id", server)

    def test_unknown_key_is_false(self):
        ctx = Context.create(a=1).child().child()
        for key in ["b", "", "A"]:
            with self.subTest(key):
                self.assertEqual(ctx.resolve(key), FALSE)

    def test_child_does_not_copy(self):
        parent = Context.create()
        child = parent.child()
        parent.set("late", True)
        self.assertEqual(child.resolve("late"), TRUE)

    def test_set_types(self):
        ctx = Context()
        ctx.update({"s": "x", "i": 3, "b": False, "lit": Integer(4)})
        self.assertEqual(ctx.resolve("s"), String("x"))
        self.assertEqual(ctx.resolve("i"), Integer(3))
        self.assertEqual(ctx.resolve("b"), Boolean(False))
        self.assertEqual(ctx.resolve("lit"), Integer(4))

        for value in [1.5, None, [1], {"a": 1}, {1, 2}]:
            with self.subTest(value):
                with self.assertRaises(TypeError):
                    ctx.set("k", value)
        with self.assertRaisesRegex(TypeError, "must be a string"):
            ctx.set(1, 1)


class TestLiterals(unittest.TestCase):
    def test_literal(self):
        self.assertEqual(literal(True), TRUE)
        self.assertEqual(literal(1), Integer(1))
        self.assertNotEqual(literal(True), Integer(1))
        self.assertEqual(literal("a"), String("a"))

    def test_matches(self):
        cases = [
            (String("Prod"), String("pROD"), True),
            (String("prod"), String("stage"), False),
            (Integer(1), Integer(1), True),
            (Integer(1), Boolean(True), False),
            (Boolean(False), Boolean(False), True),
            (String("1"), Integer(1), False),
        ]
        for a, b, expected in cases:
            with self.subTest((a, b)):
                self.assertEqual(matches(a, b), expected)


class TestEvaluator(unittest.TestCase):
    def setUp(self):
        self.ctx = Context.create(n=7, s="abc", t=True, f=False)
        self.library = {
            "seven": ContextRef("n"),
            "ref_seven": ExprRef("seven"),
            "loop_a": ExprRef("loop_b"),
            "loop_b": ExprRef("loop_a"),
            "self": And((TRUE, ExprRef("self"))),
        }
        self.evaluator = Evaluator(self.ctx, self.library)

    def test_expressions(self):
        i = Integer
        cases = [
            # Literals and lookups
            (String("x"), String("x")),
            (ContextRef("n"), i(7)),
            (ContextRef("missing"), FALSE),
            (ExprRef("seven"), i(7)),
            (ExprRef("ref_seven"), i(7)),
            (ExprRef("missing"), FALSE),
            # And / Or
            (And(()), TRUE),
            (And((TRUE, ContextRef("t"))), TRUE),
            (And((TRUE, i(1))), FALSE),
            (Or(()), FALSE),
            (Or((FALSE, ContextRef("t"))), TRUE),
            (Or((i(1), String("true"))), FALSE),
            # Eq
            (Eq(()), TRUE),
            (Eq((i(5),)), TRUE),
            (Eq((ContextRef("s"), String("ABC"), String("aBc"))), TRUE),
            (Eq((ContextRef("n"), i(7))), TRUE),
            (Eq((ContextRef("n"), String("7"))), FALSE),
            (Eq((FALSE, ContextRef("missing"))), TRUE),
            # Comparisons
            (GreaterThan(i(2), i(1)), TRUE),
            (GreaterThan(i(1), i(1)), FALSE),
            (GreaterThan(String("b"), String("a")), FALSE),
            (GreaterThan(i(2), TRUE), FALSE),
            (LessThan(i(1), i(2)), TRUE),
            (LessThan(i(2), i(2)), FALSE),
            (LessThan(TRUE, i(2)), FALSE),
            # Mod truncates towards zero
            (Mod(ContextRef("n"), i(2)), i(1)),
            (Mod(i(-7), i(2)), i(-1)),
            (Mod(i(7), i(-2)), i(1)),
            (Mod(i(7), i(0)), i(0)),
            (Mod(String("7"), i(2)), i(0)),
            # Not is "not true", not boolean negation
            (Not(TRUE), FALSE),
            (Not(FALSE), TRUE),
            (Not(i(1)), TRUE),
            (Not(String("true")), TRUE),
            # Negate
            (Negate(i(3)), i(-3)),
            (Negate(Negate(i(3))), i(3)),
            (Negate(TRUE), i(0)),
            # Sum / Concat
            (Sum(()), i(0)),
            (Sum((i(1), i(2), ContextRef("n"))), i(10)),
            (Sum((TRUE, String("5"))), i(0)),
            (Concat(()), String("")),
            (Concat((String("a"), i(1), ContextRef("s"))), String("aabc")),
            (Concat((i(1), FALSE)), String("")),
        ]
        for e, expected in cases:
            with self.subTest(e):
                self.assertEqual(self.evaluator.evaluate(e), expected)

    def test_unknown_node_is_false(self):
        self.assertEqual(self.evaluator.evaluate(None), FALSE)
        self.assertEqual(self.evaluator.evaluate("string"), FALSE)

    def test_circular_reference_is_false(self):
        with self.assertLogs("ruleflags", level="WARNING"):
            self.assertEqual(self.evaluator.evaluate(ExprRef("loop_a")), FALSE)
        with self.assertLogs("ruleflags", level="WARNING"):
            self.assertEqual(self.evaluator.evaluate(ExprRef("self")), FALSE)
        # The same name may be referenced more than once outside of a cycle.
        self.assertEqual(self.evaluator.evaluate(Sum((ExprRef("seven"), ExprRef("seven")))), Integer(14))

    def test_is_true(self):
        self.assertTrue(Evaluator.is_true(TRUE))
        self.assertFalse(Evaluator.is_true(FALSE))
        self.assertFalse(Evaluator.is_true(Integer(1)))
        self.assertFalse(Evaluator.is_true(String("true")))
