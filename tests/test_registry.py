"""Tests for InstrumentationRegistry and Target."""

import threading
import types

import pytest

from runtime_introspect import (
    AlreadyInstrumented,
    InstrumentationRegistry,
    Target,
    UnknownToken,
)


class Invoice:
    def total(self) -> int:
        return 42

    @staticmethod
    def currency() -> str:
        return "EUR"


class CreditNote(Invoice):
    pass


def replacement(self) -> int:
    return -1


# ---------------------------------------------------------------------------
# Target
# ---------------------------------------------------------------------------

class TestTarget:
    def test_class_label(self):
        assert Target(Invoice, "total").label == "Invoice.total"

    def test_module_label(self):
        module = types.ModuleType("billing")
        assert Target(module, "charge").label == "billing.charge"

    def test_instance_label_names_type_and_address(self):
        invoice = Invoice()
        label = Target(invoice, "total").label
        assert label.startswith("Invoice(0x")
        assert label.endswith(").total")

    def test_empty_name_raises(self):
        with pytest.raises(AssertionError, match="non-empty"):
            Target(Invoice, "")


# ---------------------------------------------------------------------------
# register / unregister
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_register_installs_and_unregister_restores_exact_object(self):
        registry = InstrumentationRegistry()
        original = Invoice.__dict__["total"]

        token = registry.register(Target(Invoice, "total"), replacement)
        assert Invoice.__dict__["total"] is replacement
        assert Invoice().total() == -1

        registry.unregister(token)
        assert Invoice.__dict__["total"] is original
        assert Invoice().total() == 42

    def test_restores_staticmethod_wrapper(self):
        registry = InstrumentationRegistry()
        original = Invoice.__dict__["currency"]

        token = registry.register(Target(Invoice, "currency"), staticmethod(lambda: "USD"))
        assert Invoice.currency() == "USD"
        registry.unregister(token)

        assert Invoice.__dict__["currency"] is original
        assert Invoice.currency() == "EUR"

    def test_inherited_attribute_override_is_removed(self):
        registry = InstrumentationRegistry()
        token = registry.register(Target(CreditNote, "total"), replacement)
        assert CreditNote().total() == -1
        assert Invoice().total() == 42

        registry.unregister(token)
        assert "total" not in vars(CreditNote)
        assert CreditNote().total() == 42

    def test_double_register_raises(self):
        registry = InstrumentationRegistry()
        token = registry.register(Target(Invoice, "total"), replacement)
        try:
            with pytest.raises(AlreadyInstrumented, match="Invoice.total"):
                registry.register(Target(Invoice, "total"), replacement)
        finally:
            registry.unregister(token)

    def test_unregister_twice_raises_unknown_token(self):
        registry = InstrumentationRegistry()
        token = registry.register(Target(Invoice, "total"), replacement)
        registry.unregister(token)
        with pytest.raises(UnknownToken, match="not registered"):
            registry.unregister(token)

    def test_token_from_other_registry_is_unknown(self):
        first = InstrumentationRegistry()
        second = InstrumentationRegistry()
        token = first.register(Target(Invoice, "total"), replacement)
        try:
            with pytest.raises(UnknownToken):
                second.unregister(token)
        finally:
            first.unregister(token)

    def test_redefined_attribute_makes_token_stale(self):
        class Ledger:
            def balance(self) -> int:
                return 1

        registry = InstrumentationRegistry()
        token = registry.register(Target(Ledger, "balance"), replacement)

        def redefined(self) -> int:
            return 2

        Ledger.balance = redefined
        with pytest.raises(UnknownToken, match="redefined"):
            registry.unregister(token)
        # the stale entry is dropped and the redefinition is left alone
        assert len(registry) == 0
        assert Ledger().balance() == 2

    def test_stacked_registries_released_first_in_first_out(self):
        class Ledger:
            def balance(self) -> int:
                return 1

        original = Ledger.__dict__["balance"]

        def outer(self) -> int:
            return 3

        def inner(self) -> int:
            return 2

        first = InstrumentationRegistry()
        second = InstrumentationRegistry()
        first_token = first.register(Target(Ledger, "balance"), inner)
        second_token = second.register(Target(Ledger, "balance"), outer)
        assert second_token.original is inner

        with pytest.raises(UnknownToken):
            first.unregister(first_token)
        second.unregister(second_token)

        assert Ledger.__dict__["balance"] is original

    def test_stacked_registries_over_inherited_method(self):
        class Base:
            def balance(self) -> int:
                return 1

        class Child(Base):
            pass

        first = InstrumentationRegistry()
        second = InstrumentationRegistry()
        first_token = first.register(Target(Child, "balance"), lambda self: 2)
        second_token = second.register(Target(Child, "balance"), lambda self: 3)

        assert first.clear() == 0
        second.unregister(second_token)

        assert "balance" not in vars(Child)
        assert Child().balance() == 1
        assert not first_token.had_own_attribute

    def test_lookup_and_tokens(self):
        registry = InstrumentationRegistry()
        assert registry.lookup(Invoice, "total") is None
        token = registry.register(Target(Invoice, "total"), replacement)
        try:
            assert registry.lookup(Invoice, "total") is token
            assert registry.is_instrumented(Invoice, "total")
            assert registry.tokens() == [token]
        finally:
            registry.unregister(token)
        assert not registry.is_instrumented(Invoice, "total")

    def test_clear_restores_everything(self):
        registry = InstrumentationRegistry()
        original_total = Invoice.__dict__["total"]
        original_currency = Invoice.__dict__["currency"]
        registry.register(Target(Invoice, "total"), replacement)
        registry.register(Target(Invoice, "currency"), staticmethod(lambda: "USD"))

        assert registry.clear() == 2
        assert Invoice.__dict__["total"] is original_total
        assert Invoice.__dict__["currency"] is original_currency
        assert len(registry) == 0

    def test_instance_owner_override_is_removed(self):
        registry = InstrumentationRegistry()
        invoice = Invoice()
        token = registry.register(Target(invoice, "total"), lambda: 7)
        assert invoice.total() == 7
        assert Invoice().total() == 42

        registry.unregister(token)
        assert "total" not in vars(invoice)
        assert invoice.total() == 42


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestRegistryThreadSafety:
    def test_concurrent_register_of_same_target_admits_exactly_one(self):
        class Shared:
            def ping(self) -> str:
                return "pong"

        registry = InstrumentationRegistry()
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                registry.register(Target(Shared, "ping"), replacement)
                outcome = "installed"
            except AlreadyInstrumented:
                outcome = "rejected"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("installed") == 1
        assert outcomes.count("rejected") == 7
        assert registry.clear() == 1
        assert Shared().ping() == "pong"

    def test_concurrent_register_of_distinct_targets(self):
        owners = [type(f"Owner{i}", (), {"run": lambda self: "original"}) for i in range(40)]
        registry = InstrumentationRegistry()

        def register_slice(chunk: list[type]) -> None:
            for owner in chunk:
                registry.register(Target(owner, "run"), replacement)

        threads = [threading.Thread(target=register_slice, args=(owners[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 40
        assert len({token.id for token in registry.tokens()}) == 40
        registry.clear()
        assert all(owner().run() == "original" for owner in owners)
