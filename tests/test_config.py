"""Tests for application settings and Context Builder configuration resolution."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from llm_gateway.config import ContextStrategy, CostTier, Environment, Settings, get_settings
from llm_gateway.context.config import (
    ContextConfig,
    ContextConfigResolver,
    InMemoryContextConfigSource,
)
from llm_gateway.models.context_config import ConfigScope


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self):
        """Defaults describe a local development gateway."""
        settings = Settings()

        assert settings.environment == Environment.DEV
        assert settings.default_tier == CostTier.L0
        assert settings.max_escalation_tier == CostTier.L2
        assert settings.context_strategy == ContextStrategy.SUMMARY_RECENT
        assert settings.token_estimator_method == "chars"

    def test_default_catalog_covers_every_tier(self):
        settings = Settings()
        tiers = {entry.tier for entry in settings.model_catalog}
        assert tiers == {CostTier.L0, CostTier.L1, CostTier.L2, CostTier.L3}

    def test_default_conflict_terms_skip_issue(self):
        """The review prompt itself asks for issues, so the bare word never flags."""
        terms = Settings().conflict_terms
        assert "bug" in terms
        assert "issue" not in terms

    def test_ceiling_below_default_tier_rejected(self):
        with pytest.raises(ValidationError, match="MAX_ESCALATION_TIER"):
            Settings(default_tier=CostTier.L2, max_escalation_tier=CostTier.L1)

    def test_empty_conflict_terms_rejected(self):
        with pytest.raises(ValidationError, match="CONFLICT_TERMS"):
            Settings(conflict_terms=[])

    def test_recent_window_bounds_checked(self):
        with pytest.raises(ValidationError):
            Settings(context_recent_min_messages=10, context_recent_max_messages=5)

    def test_production_rejects_development_key(self):
        with pytest.raises(RuntimeError, match="PRODUCTION STARTUP BLOCKED"):
            Settings(environment=Environment.PROD)

    def test_production_with_real_key(self):
        settings = Settings(environment=Environment.PROD, litellm_api_key="sk-production-key")
        assert settings.is_prod is True

    def test_test_environment_skips_production_checks(self):
        settings = Settings(environment=Environment.TEST)
        assert settings.is_prod is False

    def test_env_vars_override_defaults(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_TIER", "L1")
        monkeypatch.setenv("ENABLE_CROSS_CHECK", "true")
        monkeypatch.setenv("ORCHESTRATOR_PASSES", "three-pass")

        settings = Settings()

        assert settings.default_tier == CostTier.L1
        assert settings.enable_cross_check is True
        assert settings.orchestrator_passes == "three-pass"

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


class TestContextConfig:
    def test_from_settings_copies_context_fields(self, fake_settings):
        settings = fake_settings.model_copy(
            update={"context_strategy": ContextStrategy.SPAN_RETRIEVAL, "context_span_top_k": 9}
        )
        config = ContextConfig.from_settings(settings)

        assert config.strategy == ContextStrategy.SPAN_RETRIEVAL
        assert config.span_top_k == 9
        assert config.max_prompt_tokens == settings.context_max_prompt_tokens

    def test_merged_revalidates(self):
        config = ContextConfig()
        with pytest.raises(ValidationError):
            config.merged({"recent_min_messages": 50})

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            ContextConfig().merged({"strategy_name": "full"})

    def test_strategy_accepts_wire_value(self):
        assert ContextConfig().merged({"strategy": "last-n"}).strategy == ContextStrategy.LAST_N

    def test_merged_without_overrides_returns_self(self):
        config = ContextConfig()
        assert config.merged({}) is config


class TestContextConfigResolver:
    @pytest.fixture
    def source(self):
        return InMemoryContextConfigSource(
            {
                (ConfigScope.PROJECT, "proj-1"): {"strategy": "full", "max_prompt_tokens": 3000},
                (ConfigScope.TOOL, "tool-1"): {"max_prompt_tokens": 1500},
            }
        )

    async def test_resolution_precedence(self, source):
        resolver = ContextConfigResolver(ContextConfig(), source)
        await resolver.refresh()

        assert resolver.resolve().max_prompt_tokens == 4096

        project = resolver.resolve(project_id="proj-1")
        assert project.strategy == ContextStrategy.FULL
        assert project.max_prompt_tokens == 3000

        tool = resolver.resolve(project_id="proj-1", tool_id="tool-1")
        assert tool.strategy == ContextStrategy.FULL
        assert tool.max_prompt_tokens == 1500

        call = resolver.resolve(
            project_id="proj-1", tool_id="tool-1", overrides={"max_prompt_tokens": 800}
        )
        assert call.max_prompt_tokens == 800

    async def test_unknown_scope_keys_use_defaults(self, source):
        resolver = ContextConfigResolver(ContextConfig(), source)
        await resolver.refresh()
        assert resolver.resolve(project_id="other") == ContextConfig()

    async def test_update_writes_through_and_publishes(self, source):
        resolver = ContextConfigResolver(ContextConfig(), source)

        await resolver.update(ConfigScope.TOOL, "tool-2", {"recent_max_messages": 8})

        assert resolver.resolve(tool_id="tool-2").recent_max_messages == 8
        rows = await source.load_all()
        assert rows[(ConfigScope.TOOL, "tool-2")] == {"recent_max_messages": 8}

    async def test_invalid_update_is_not_published(self, source):
        resolver = ContextConfigResolver(ContextConfig(), source)

        with pytest.raises(ValidationError):
            await resolver.update(ConfigScope.PROJECT, "proj-2", {"span_budget_ratio": 2.0})

        assert (ConfigScope.PROJECT, "proj-2") not in await source.load_all()
        assert resolver.resolve(project_id="proj-2").span_budget_ratio == 0.4

    async def test_conflicting_stored_layers_drop_tool_layer(self):
        source = InMemoryContextConfigSource(
            {
                (ConfigScope.PROJECT, "proj-1"): {"recent_min_messages": 10},
                (ConfigScope.TOOL, "tool-1"): {"recent_max_messages": 8, "span_top_k": 2},
            }
        )
        resolver = ContextConfigResolver(ContextConfig(), source)
        await resolver.refresh()

        resolved = resolver.resolve(project_id="proj-1", tool_id="tool-1")

        assert resolved.recent_min_messages == 10
        assert resolved.recent_max_messages == 20
        assert resolved.span_top_k == 5

    async def test_invalid_stored_project_layer_falls_back_to_defaults(self):
        # Rows written outside update() are never validated on their own
        source = InMemoryContextConfigSource(
            {(ConfigScope.PROJECT, "proj-1"): {"span_budget_ratio": 3.0}}
        )
        resolver = ContextConfigResolver(ContextConfig(), source)
        await resolver.refresh()

        assert resolver.resolve(project_id="proj-1") == ContextConfig()

    async def test_invalid_call_overrides_still_raise(self):
        source = InMemoryContextConfigSource(
            {(ConfigScope.PROJECT, "proj-1"): {"recent_min_messages": 10}}
        )
        resolver = ContextConfigResolver(ContextConfig(), source)
        await resolver.refresh()

        with pytest.raises(ValidationError):
            resolver.resolve(project_id="proj-1", overrides={"recent_max_messages": 8})

    async def test_resolver_without_source(self):
        resolver = ContextConfigResolver(ContextConfig(strategy=ContextStrategy.LAST_N))
        await resolver.refresh()
        assert resolver.resolve(project_id="anything").strategy == ContextStrategy.LAST_N
