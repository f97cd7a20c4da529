"""Unit tests for sandboxos/sandbox/guards.py."""

import json
import types

import pytest

from sandboxos.sandbox.guards import (
    PlatformPrinter,
    SafeModule,
    build_guards,
    guarded_getattr,
    restricted_builtins,
)


def _generator():
    yield 1


class TestGuardedGetattr:
    def test_plain_attribute(self):
        assert guarded_getattr("a,b", "split")(",") == ["a", "b"]

    def test_private_attribute_refused(self):
        with pytest.raises(AttributeError, match="starts with"):
            guarded_getattr((), "__class__")

    @pytest.mark.parametrize("name", ["gi_frame", "gi_code", "f_back", "tb_frame"])
    def test_introspection_attributes_refused(self, name):
        with pytest.raises(AttributeError, match="restricted"):
            guarded_getattr(_generator(), name)

    def test_string_format_refused(self):
        with pytest.raises(NotImplementedError):
            guarded_getattr("{0}", "format")

    def test_module_values_refused(self):
        holder = types.SimpleNamespace(inner=json)
        with pytest.raises(AttributeError, match="module"):
            guarded_getattr(holder, "inner")

    def test_missing_attribute_raises(self):
        with pytest.raises(AttributeError):
            guarded_getattr(types.SimpleNamespace(), "nothing")

    def test_missing_attribute_with_default(self):
        assert guarded_getattr(types.SimpleNamespace(), "nothing", 5) == 5


class TestSafeModule:
    def test_exposes_functions(self):
        assert SafeModule(json).loads("[1, 2]") == [1, 2]

    def test_hides_submodules_and_private_names(self):
        view = SafeModule(json)
        for name in ("codecs", "decoder", "__name__", "__dict__", "_default_encoder"):
            with pytest.raises(AttributeError):
                getattr(view, name)

    def test_read_only(self):
        view = SafeModule(json)
        with pytest.raises(AttributeError, match="read-only"):
            view.dumps = None
        with pytest.raises(AttributeError, match="read-only"):
            del view.dumps
        assert json.dumps([]) == "[]"

    def test_repr(self):
        assert repr(SafeModule(json)) == "<module 'json'>"


class TestHelpers:
    def test_inplacevar(self):
        guards = build_guards(lambda text: None)
        assert guards["_inplacevar_"]("+=", 2, 3) == 5
        assert guards["_inplacevar_"]("|=", {1}, {2}) == {1, 2}
        with pytest.raises(ValueError, match="unsupported"):
            guards["_inplacevar_"]("?=", 1, 1)

    def test_apply(self):
        guards = build_guards(lambda text: None)
        assert guards["_apply_"](max, *[1, 3], key=None) == 3

    def test_printer_forwards_and_collects(self):
        written: list[str] = []
        printer = build_guards(written.append)["_print_"]()
        printer._call_print("a", "b")
        printer._call_print("c", end="")
        assert written == ["a b\n", "c"]
        assert printer() == "a b\nc"
        assert isinstance(printer, PlatformPrinter)

    def test_restricted_builtins_drop_loop_exits(self):
        builtins = restricted_builtins({"len": len})
        assert "SystemExit" not in builtins
        assert "KeyboardInterrupt" not in builtins
        assert builtins["len"] is len
        assert "open" not in builtins
