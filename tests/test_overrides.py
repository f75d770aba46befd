"""Tests for override resolution."""

import pytest

from podgraph import Container, UsageError, provider


class TestOverrides:
    def test_scenario_greeting(self):
        greeting = provider(lambda ref: "Hello world")
        bonjour = provider(lambda ref: "Bonjour")
        c = Container(overrides=[(greeting, bonjour)])
        assert c.read(greeting) == "Bonjour"
        assert Container().read(greeting) == "Hello world"

    def test_original_factory_never_runs(self):
        calls = []
        original = provider(lambda ref: calls.append("original"))
        c = Container(overrides=[original.override_with_value(1)])
        assert c.read(original) == 1
        assert calls == []

    def test_dependents_see_replacement(self):
        class Repository:
            def todos(self):
                return ["real"]

        class FakeRepository:
            def todos(self):
                return ["fake 1", "fake 2"]

        repository = provider(lambda ref: Repository())
        todo_list = provider(lambda ref: ref.watch(repository).todos())

        c = Container(overrides=[repository.override_with_value(FakeRepository())])
        assert c.read(todo_list) == ["fake 1", "fake 2"]
        assert Container().read(todo_list) == ["real"]

    def test_original_and_replacement_share_node(self):
        original = provider(lambda ref: object())
        replacement = provider(lambda ref: object())
        c = Container(overrides=[(original, replacement)])
        assert c.read(original) is c.read(replacement)
        assert len(c.debug_nodes()) == 1

    def test_chains_are_followed(self):
        a = provider(lambda ref: "a")
        b = provider(lambda ref: "b")
        x = provider(lambda ref: "x")
        c = Container(overrides=[(a, b), (b, x)])
        assert c.read(a) == "x"

    def test_mapping_accepted(self):
        a = provider(lambda ref: "a")
        b = provider(lambda ref: "b")
        assert Container(overrides={a: b}).read(a) == "b"


class TestOverrideValidation:
    def test_self_override(self):
        a = provider(lambda ref: 1)
        with pytest.raises(UsageError):
            Container(overrides=[(a, a)])

    def test_cycle_rejected(self):
        a = provider(lambda ref: 1)
        b = provider(lambda ref: 2)
        with pytest.raises(UsageError, match="cycle"):
            Container(overrides=[(a, b), (b, a)])

    def test_duplicate_rejected(self):
        a = provider(lambda ref: 1)
        with pytest.raises(UsageError):
            Container(overrides=[a.override_with_value(2), a.override_with_value(3)])

    def test_family_mismatch(self):
        family = provider(lambda ref, n: n, family=True)
        single = provider(lambda ref: 1)
        with pytest.raises(UsageError):
            Container(overrides=[(family, single)])
        with pytest.raises(UsageError):
            Container(overrides=[(single, family)])

    def test_malformed_pair(self):
        a = provider(lambda ref: 1)
        with pytest.raises(UsageError):
            Container(overrides=[a])
        with pytest.raises(UsageError):
            Container(overrides=[(a, "not a definition")])


class TestFamilyOverrides:
    def test_whole_family(self):
        user = provider(lambda ref, user_id: f"user {user_id}", family=True)
        fake = provider(lambda ref, user_id: f"fake {user_id}", family=True)
        c = Container(overrides=[(user, fake)])
        assert c.read(user(1)) == "fake 1"
        assert c.read(user, 2) == "fake 2"

    def test_single_member(self):
        user = provider(lambda ref, user_id: f"user {user_id}", family=True)
        c = Container(overrides=[user(1).override_with(provider(lambda ref: "pinned"))])
        assert c.read(user(1)) == "pinned"
        assert c.read(user(2)) == "user 2"

    def test_member_replacement_sees_arg(self):
        user = provider(lambda ref, user_id: user_id, family=True)
        c = Container(overrides=[(user(7), provider(lambda ref: ref.arg * 2))])
        assert c.read(user(7)) == 14

    def test_member_needs_single_replacement(self):
        user = provider(lambda ref, user_id: user_id, family=True)
        other = provider(lambda ref, user_id: user_id, family=True)
        with pytest.raises(UsageError):
            Container(overrides=[(user(1), other)])

    def test_family_value_override(self):
        user = provider(lambda ref, user_id: f"user {user_id}", family=True)
        c = Container(overrides=[user.override_with_value("anyone")])
        assert c.read(user(1)) == "anyone"
        assert c.read(user(2)) == "anyone"
