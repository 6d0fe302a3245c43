"""Tests for widget registry loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from widgetctl.config import MAX_REGISTRY_FILE_SIZE_BYTES, MAX_WIDGETS_PER_REGISTRY
from widgetctl.spec_loader import SpecLoadError, load_registry


class TestLoadRegistry:
    """Tests for load_registry."""

    def test_valid_registry(self, registry_file: Path) -> None:
        """Test loading widgets in registration order."""
        registry = load_registry(registry_file)

        assert [w.widget_name for w in registry.widgets] == ["clubhouse", "flashcard"]
        assert registry.discovered.vpc_id == "vpc-0abc123"
        assert registry.widgets[0].memory_size == 512

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file is reported."""
        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(tmp_path / "nope.yaml")

        assert "not found" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is reported."""
        path = tmp_path / "registry.yaml"
        path.write_text("widgets: [unclosed")

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that the document must be a mapping."""
        path = tmp_path / "registry.yaml"
        path.write_text("- clubhouse\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(path)

        assert "mapping" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that files above the size cap are rejected before parsing."""
        path = tmp_path / "registry.yaml"
        path.write_text("#" * (MAX_REGISTRY_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(path)

        assert "maximum size" in str(exc_info.value)

    def test_too_many_widgets(self, registry_file: Path, tmp_path: Path) -> None:
        """Test the widget count limit."""
        header = registry_file.read_text().split("widgets:")[0]
        widgets = "".join(
            f"  - widgetName: w{i:03d}\n    environment: dev\n"
            for i in range(MAX_WIDGETS_PER_REGISTRY + 1)
        )
        path = tmp_path / "big.yaml"
        path.write_text(f"{header}widgets:\n{widgets}")

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(path)

        assert "limit" in str(exc_info.value)

    def test_validation_errors_name_fields(self, registry_file: Path) -> None:
        """Test that pydantic errors are listed with their location."""
        registry_file.write_text(
            registry_file.read_text().replace("memorySize: 512", "memorySize: -1")
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(registry_file)

        assert "widgets.0.memorySize" in str(exc_info.value)

    def test_duplicate_widget(self, registry_file: Path) -> None:
        """Test that duplicate widget names are rejected at load time."""
        registry_file.write_text(
            registry_file.read_text().replace("widgetName: flashcard", "widgetName: clubhouse")
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_registry(registry_file)

        assert "duplicate widgetName: clubhouse" in str(exc_info.value)
