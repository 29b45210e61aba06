"""
Ignition - System Graph Tests

Tests:
  - expansion: identity default, dependency closure, metadata kept verbatim
  - init in dependency order with Ref and RefSet substitution
  - structural errors raised before any component behavior runs
  - component failures returned with the partial system
  - halt/suspend in reverse init order, resume in init order
  - built-in base tags
"""

import os
import unittest

import sample_components
from sample_components import make_registry

from ignition.config_loader import SOURCES_KEY
from ignition.errors import (
    AmbiguousDispatchError,
    ComponentError,
    CyclicDependencyError,
    InvalidReferenceError,
    UnregisteredTagError,
)
from ignition.refs import Ref, RefSet
from ignition.system import (
    ENV,
    FUNCTION,
    KEY,
    NIL,
    VAR,
    VarHandle,
    build,
    dependency_order,
    expand,
    halt,
    init,
    make_var,
    resume,
    suspend,
)


class _RegistryCase(unittest.TestCase):
    def setUp(self):
        self.events = []
        self.reg = make_registry(self.events)

    def build(self, config, keys=None, system=None):
        return build(config, keys, system=system, registry=self.reg)

    def init(self, config, keys=None):
        return init(config, keys, registry=self.reg)


class TestExpand(_RegistryCase):
    def test_default_is_identity(self):
        config = {"db": {"url": "sqlite://"}}
        self.assertEqual(expand(config, registry=self.reg), config)

    def test_registered_expand_applied(self):
        self.reg.register("db", "expand", lambda tag, v: {**v, "expanded": True})
        result = expand({"db": {"url": "x"}}, registry=self.reg)
        self.assertEqual(result["db"], {"url": "x", "expanded": True})

    def test_selection_covers_dependencies_only(self):
        self.reg.register("resource", "expand", lambda tag, v: {**v, "expanded": True})
        config = {
            "db": {},
            "cache": {},
            "handler": {"db": Ref("db")},
        }
        result = expand(config, ["handler"], registry=self.reg)
        self.assertTrue(result["handler"]["expanded"])
        self.assertTrue(result["db"]["expanded"])
        self.assertEqual(result["cache"], {})

    def test_metadata_kept_verbatim(self):
        sources = {"local_file": None, "resource_dirs": ["config"], "resource_files": []}
        config = {SOURCES_KEY: sources, "db": {}}
        result = expand(config, registry=self.reg)
        self.assertIs(result[SOURCES_KEY], sources)

    def test_input_not_mutated(self):
        self.reg.register("db", "expand", lambda tag, v: {**v, "expanded": True})
        config = {"db": {"url": "x"}}
        expand(config, registry=self.reg)
        self.assertEqual(config, {"db": {"url": "x"}})

    def test_prepped_var_expansion_is_idempotent(self):
        config = {"sample_components:greeting": "sample_components:GREETING"}
        from ignition import registry as default_registry
        default_registry.derive("sample_components:greeting", "ignition.system:prepped-var")
        once = expand(config)
        twice = expand(once)
        self.assertEqual(once, twice)
        self.assertEqual(
            once["sample_components:greeting"],
            VarHandle("sample_components", "GREETING"),
        )
        self.assertEqual(init(once)["sample_components:greeting"], "hello")

    def test_expansion_is_idempotent_for_selections(self):
        self.reg.register("resource", "expand", lambda tag, v: {"pool": 4, **v})
        config = {
            "db": {"url": "x"},
            "cache": {"db": Ref("db")},
            "handler": {"db": Ref("db")},
        }
        for keys in (["handler"], ["handler", "cache"], None):
            once = expand(config, keys, registry=self.reg)
            self.assertEqual(expand(once, keys, registry=self.reg), once, keys)

    def test_expansion_under_superset_selection(self):
        self.reg.register("resource", "expand", lambda tag, v: {"pool": 4, **v})
        config = {"db": {}, "cache": {}, "handler": {"db": Ref("db")}}
        narrow = expand(config, ["handler"], registry=self.reg)
        wide = expand(config, ["handler", "cache"], registry=self.reg)
        self.assertEqual(expand(narrow, ["handler", "cache"], registry=self.reg), wide)
        self.assertEqual(narrow["cache"], {})
        self.assertEqual(wide["cache"], {"pool": 4})


class TestInit(_RegistryCase):
    def test_dependency_order(self):
        config = {
            "handler": {"db": Ref("db"), "cache": Ref("cache")},
            "cache": {"db": Ref("db")},
            "db": {"url": "sqlite://"},
        }
        system = self.init(config)
        self.assertEqual(list(system), ["db", "cache", "handler"])
        self.assertEqual(
            self.events, [("init", "db"), ("init", "cache"), ("init", "handler")],
        )
        self.assertIs(system["handler"].config["db"], system["db"])
        self.assertIs(system["cache"].config["db"], system["db"])

    def test_refset_collects_derived_keys(self):
        config = {
            "http": {"routes": RefSet("handler")},
            "handler.users": {},
            "handler.orders": {},
        }
        system = self.init(config)
        routes = system["http"].config["routes"]
        self.assertEqual(set(routes), {"handler.users", "handler.orders"})
        self.assertIs(routes["handler.users"], system["handler.users"])
        self.assertEqual(self.events[-1], ("init", "http"))

    def test_refset_excludes_self(self):
        config = {"handler": {"peers": RefSet("handler")}, "handler.users": {}}
        system = self.init(config)
        self.assertEqual(list(system["handler"].config["peers"]), ["handler.users"])

    def test_ref_to_parent_tag_resolves_to_single_descendant(self):
        config = {"http": {"users": Ref("handler")}, "handler.users": {}}
        system = self.init(config)
        self.assertIs(system["http"].config["users"], system["handler.users"])

    def test_selection_inits_only_needed_keys(self):
        config = {"db": {}, "cache": {}, "handler": {"db": Ref("db")}}
        system = self.init(config, ["handler"])
        self.assertEqual(list(system), ["db", "handler"])

    def test_selection_by_parent_tag(self):
        config = {"db": {}, "handler.users": {}, "handler.orders": {}}
        system = self.init(config, ["handler"])
        self.assertEqual(sorted(system), ["handler.orders", "handler.users"])

    def test_existing_system_reused(self):
        first = self.init({"db": {}})
        config = {"db": {}, "handler": {"db": Ref("db")}}
        outcome = self.build(config, system=first)
        self.assertTrue(outcome.ok)
        self.assertIs(outcome.system["db"], first["db"])
        self.assertEqual(self.events, [("init", "db"), ("init", "handler")])

    def test_metadata_carried_into_system(self):
        sources = {"local_file": "x.yaml", "resource_dirs": [], "resource_files": []}
        system = self.init({SOURCES_KEY: sources, "db": {}})
        self.assertIs(system[SOURCES_KEY], sources)
        self.assertEqual(self.events, [("init", "db")])


class TestStructuralErrors(_RegistryCase):
    def test_cycle_detected_before_init(self):
        config = {"db": {"c": Ref("cache")}, "cache": {"d": Ref("db")}}
        with self.assertRaises(CyclicDependencyError) as ctx:
            self.build(config)
        self.assertEqual(ctx.exception.cycle, ["db", "cache", "db"])
        self.assertEqual(self.events, [])

    def test_dependency_order_reports_cycle(self):
        config = {"db": {"c": Ref("db")}}
        with self.assertRaises(CyclicDependencyError):
            dependency_order(config, None, self.reg)

    def test_dangling_ref(self):
        config = {"db": {}, "handler": {"x": Ref("nope")}}
        with self.assertRaises(InvalidReferenceError) as ctx:
            self.build(config)
        self.assertEqual(ctx.exception.key, "handler")
        self.assertEqual(self.events, [])

    def test_ambiguous_ref_to_parent_tag(self):
        config = {"http": {"h": Ref("handler")}, "handler.users": {}, "handler.orders": {}}
        with self.assertRaises(InvalidReferenceError):
            self.build(config)

    def test_unknown_selected_key(self):
        with self.assertRaises(InvalidReferenceError):
            self.build({"db": {}}, ["cache"])

    def test_unregistered_tag_before_side_effects(self):
        config = {"db": {}, "mystery": {}}
        with self.assertRaises(UnregisteredTagError) as ctx:
            self.build(config)
        self.assertEqual(ctx.exception.tag, "mystery")
        self.assertEqual(self.events, [])

    def test_ambiguous_dispatch_before_side_effects(self):
        self.reg.derive("both", "db")
        self.reg.derive("both", "cache")
        self.reg.register("db", "init", lambda tag, v: "db")
        self.reg.register("cache", "init", lambda tag, v: "cache")
        with self.assertRaises(AmbiguousDispatchError):
            self.build({"handler": {}, "both": {}})
        self.assertEqual(self.events, [])


class TestComponentFailure(_RegistryCase):
    CONFIG = {
        "db": {},
        "broken": {"db": Ref("db")},
        "http": {"b": Ref("broken")},
    }

    def test_failure_returns_partial_system(self):
        outcome = self.build(self.CONFIG)
        self.assertFalse(outcome.ok)
        failure = outcome.failure
        self.assertEqual(failure.key, "broken")
        self.assertIsInstance(failure.error, ComponentError)
        self.assertFalse(failure.error.structural)
        self.assertIsInstance(failure.error.__cause__, RuntimeError)
        self.assertEqual(list(failure.partial_system), ["db"])
        self.assertTrue(failure.partial_system["db"].open)
        self.assertEqual(self.events, [("init", "db"), ("init", "broken")])

    def test_init_raises_component_error(self):
        with self.assertRaises(ComponentError) as ctx:
            self.init(self.CONFIG)
        self.assertEqual(ctx.exception.key, "broken")
        self.assertEqual(ctx.exception.op, "init")
        self.assertIn("db", ctx.exception.partial_system)


class TestHalt(_RegistryCase):
    CONFIG = {
        "db": {},
        "cache": {"db": Ref("db")},
        "handler": {"cache": Ref("cache")},
    }

    def test_reverse_init_order(self):
        system = self.init(self.CONFIG)
        self.events.clear()
        outcome = halt(system, registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertEqual(
            self.events, [("halt", "handler"), ("halt", "cache"), ("halt", "db")],
        )
        self.assertEqual(outcome.system, {})
        self.assertFalse(system["db"].open)

    def test_partial_halt(self):
        system = self.init(self.CONFIG)
        self.events.clear()
        outcome = halt(system, ["cache"], registry=self.reg)
        self.assertEqual(self.events, [("halt", "cache")])
        self.assertEqual(list(outcome.system), ["db", "handler"])

    def test_halt_unknown_key_ignored(self):
        system = self.init({"db": {}})
        outcome = halt(system, ["cache"], registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertIn("db", outcome.system)

    def test_halt_without_behavior_just_removes(self):
        system = {"plain": object()}
        outcome = halt(system, registry=self.reg)
        self.assertEqual(outcome.system, {})

    def test_halt_failure_stops_walk(self):
        system = self.init({"db": {}, "bad-halt": {"db": Ref("db")}})
        self.events.clear()
        outcome = halt(system, registry=self.reg)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.failure.key, "bad-halt")
        self.assertIsInstance(outcome.failure.error.__cause__, OSError)
        self.assertEqual(self.events, [("halt", "bad-halt")])
        self.assertEqual(list(outcome.system), ["db", "bad-halt"])
        self.assertTrue(system["db"].open)


class TestSuspendResume(_RegistryCase):
    def setUp(self):
        super().setUp()
        self.reg.derive("conn2", "conn")
        self.config = {
            "db": {},
            "conn2": {"c": Ref("conn")},
            "conn": {"db": Ref("db")},
        }

    def test_suspend_reverse_order(self):
        system = self.init(self.config)
        self.events.clear()
        outcome = suspend(system, registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertEqual(self.events, [("suspend", "conn2"), ("suspend", "conn")])
        self.assertTrue(outcome.system["conn"].suspended)
        self.assertIs(outcome.system["conn"], system["conn"])
        self.assertTrue(outcome.system["db"].open)

    def test_suspend_returning_none_keeps_value(self):
        self.reg.register("db", "suspend", lambda tag, v: None)
        system = self.init({"db": {}})
        outcome = suspend(system, registry=self.reg)
        self.assertIs(outcome.system["db"], system["db"])

    def test_resume_in_init_order_with_fresh_config(self):
        system = suspend(self.init(self.config), registry=self.reg).system
        self.events.clear()
        fresh = dict(self.config, conn={"db": Ref("db"), "timeout": 5})
        outcome = resume(fresh, system, registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertEqual(self.events, [("resume", "conn"), ("resume", "conn2")])
        conn = outcome.system["conn"]
        self.assertIs(conn, system["conn"])
        self.assertFalse(conn.suspended)
        self.assertEqual(conn.config["timeout"], 5)
        self.assertIs(conn.config["db"], system["db"])

    def test_resume_default_keeps_prior(self):
        system = self.init(self.config)
        self.events.clear()
        outcome = resume(self.config, system, registry=self.reg)
        self.assertIs(outcome.system["db"], system["db"])
        self.assertNotIn(("init", "db"), self.events)

    def test_resume_halts_only_removed_keys(self):
        system = suspend(
            self.init({"handler": {}, "handler.users": {}}), registry=self.reg,
        ).system
        users = system["handler.users"]
        self.events.clear()
        outcome = resume({"handler.users": {}}, system, registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertEqual(self.events, [("halt", "handler")])
        self.assertIs(outcome.system["handler.users"], users)
        self.assertTrue(users.open)
        self.assertNotIn("handler", outcome.system)

    def test_resume_inits_new_and_halts_removed(self):
        system = self.init({"db": {}, "cache": {}})
        self.events.clear()
        outcome = resume({"db": {}, "http": {}}, system, registry=self.reg)
        self.assertTrue(outcome.ok)
        self.assertEqual(self.events, [("halt", "cache"), ("init", "http")])
        self.assertEqual(sorted(outcome.system), ["db", "http"])

    def test_partial_resume_keeps_other_keys(self):
        system = self.init({"db": {}, "cache": {}})
        self.events.clear()
        outcome = resume({"db": {}}, system, ["db"], registry=self.reg)
        self.assertEqual(self.events, [])
        self.assertIn("cache", outcome.system)

    def test_resume_failure(self):
        self.reg.register("conn", "resume", _raise)
        system = self.init(self.config)
        outcome = resume(self.config, system, registry=self.reg)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.failure.key, "conn")
        self.assertEqual(outcome.failure.error.op, "resume")


def _raise(tag, prior, fresh):
    raise ValueError("cannot resume")


class TestBuiltins(unittest.TestCase):
    def setUp(self):
        from ignition import registry as default_registry
        self.reg = default_registry.REGISTRY

    def _init_one(self, tag, parent, value):
        self.reg.derive(tag, parent)
        return init({tag: value})[tag]

    def test_key(self):
        self.assertEqual(self._init_one("sample_components:name-key", KEY, None),
                         "sample_components:name-key")

    def test_nil(self):
        self.assertIsNone(self._init_one("sample_components:nothing", NIL, {"x": 1}))

    def test_value(self):
        payload = {"iterations": 10}
        self.assertIs(self._init_one("sample_components:payload",
                                     "ignition.system:value", payload), payload)

    def test_function_callable(self):
        result = self._init_one("sample_components:fn", FUNCTION, lambda tag: tag.upper())
        self.assertEqual(result, "SAMPLE_COMPONENTS:FN")

    def test_function_symbol(self):
        result = self._init_one("sample_components:fn-sym", FUNCTION, "builtins:str.upper")
        self.assertEqual(result, "SAMPLE_COMPONENTS:FN-SYM")

    def test_env(self):
        env = {"HOME": "/srv"}
        self.assertIs(self._init_one("sample_components:env", ENV, env), env)

    def test_var(self):
        self.assertEqual(self._init_one("sample_components:sep", VAR, "os.path:sep"), os.sep)

    def test_make_var_needs_module_and_name(self):
        for tag in ("nocolon", "sample_components:", ":made"):
            with self.assertRaises(ValueError):
                make_var(tag, 1)

    def test_var_make_binds_and_unbinds(self):
        system = init({"sample_components:made": 42})
        self.assertEqual(sample_components.made, 42)
        halt(system)
        self.assertIsNone(sample_components.made)


if __name__ == "__main__":
    unittest.main()
