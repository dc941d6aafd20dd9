"""Tests for api configuration."""

import pytest

from tagquery import ApiConfig, create_api


async def noop(args, context, extra_options=None):
    return {"data": None}


class TestApiConfig:
    """Tests for ApiConfig.create validation."""

    def test_defaults(self) -> None:
        """Test the default configuration values."""
        config = ApiConfig.create()
        assert config.reducer_path == "api"
        assert config.keep_unused_data_for == 60_000
        assert config.refetch_on_mount_or_arg_change is False
        assert config.invalidation_behavior == "delayed"

    def test_durations_are_parsed(self) -> None:
        """Test that duration options are stored in milliseconds."""
        config = ApiConfig.create(
            keep_unused_data_for="5m", refetch_on_mount_or_arg_change="30s"
        )
        assert config.keep_unused_data_for == 300_000
        assert config.refetch_on_mount_or_arg_change == 30_000

    def test_empty_reducer_path(self) -> None:
        """Test that an empty reducer_path is rejected."""
        with pytest.raises(ValueError, match="reducer_path"):
            ApiConfig.create(reducer_path="")

    def test_unknown_invalidation_behavior(self) -> None:
        """Test that unknown invalidation behaviours are rejected."""
        with pytest.raises(ValueError, match="invalidation_behavior"):
            ApiConfig.create(
                invalidation_behavior="eventually"  # type: ignore[arg-type]
            )

    def test_malformed_duration(self) -> None:
        """Test that malformed durations are rejected."""
        with pytest.raises(ValueError, match="Invalid duration"):
            ApiConfig.create(keep_unused_data_for="soon")

    def test_skip_schema_names(self) -> None:
        """Test that schema names to skip are validated."""
        config = ApiConfig.create(skip_schema_validation=["response", "meta"])
        assert config.skip_schema_validation == frozenset({"response", "meta"})
        with pytest.raises(ValueError, match="Unknown schema names"):
            ApiConfig.create(
                skip_schema_validation=["everything"]  # type: ignore[list-item]
            )

    def test_to_dict(self) -> None:
        """Test that to_dict returns plain values."""
        config = ApiConfig.create(tag_types=["Post"], skip_schema_validation=["meta"])
        assert config.to_dict() == {
            "reducer_path": "api",
            "keep_unused_data_for": 60_000,
            "refetch_on_mount_or_arg_change": False,
            "refetch_on_focus": False,
            "refetch_on_reconnect": False,
            "invalidation_behavior": "delayed",
            "tag_types": ["Post"],
            "skip_schema_validation": ["meta"],
        }


class TestCreateApi:
    """Tests for create_api options."""

    def test_options_reach_config(self) -> None:
        """Test that create_api keyword options reach the config."""
        api = create_api(
            base_query=noop,
            reducer_path="postsApi",
            tag_types=["Post", "User"],
            refetch_on_focus=True,
        )
        assert api.reducer_path == "postsApi"
        assert api.config.tag_types == ("Post", "User")
        assert api.config.refetch_on_focus
        assert repr(api) == "Api('postsApi', endpoints=[])"

    def test_invalid_option_raises(self) -> None:
        """Test that create_api validates its options."""
        with pytest.raises(ValueError):
            create_api(base_query=noop, keep_unused_data_for=-1)
