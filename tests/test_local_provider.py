"""Tests for the file-backed local provider."""

from pathlib import Path

import pytest

from provisioner.local_provider import LocalProvider
from provisioner.provider import PermanentProviderError


@pytest.fixture
def local(tmp_path: Path) -> LocalProvider:
    return LocalProvider(tmp_path / "cloud")


class TestLocalProvider:
    """Tests for LocalProvider."""

    def test_create_assigns_id_and_computed_attributes(self, local: LocalProvider) -> None:
        """Test that create reports values unknown before apply."""
        result = local.create("aws:elbv2:ApplicationLoadBalancer", {"internetFacing": True})

        assert result.physical_id.startswith("applicationloadbalancer-")
        assert result.outputs["arn"] == (
            f"arn:local:aws:elbv2:ApplicationLoadBalancer:{result.physical_id}"
        )
        assert result.outputs["dnsName"] == f"{result.physical_id}.elb.local"
        assert (local.root / f"{result.physical_id}.json").exists()

    def test_declared_value_overrides_computed(self, local: LocalProvider) -> None:
        """Test that an explicit attribute wins over the generated one."""
        result = local.create("aws:ec2:Vpc", {"cidrBlock": "10.250.0.0/16"})

        assert result.outputs["cidrBlock"] == "10.250.0.0/16"

    def test_ids_are_unique(self, local: LocalProvider) -> None:
        """Test that two creates of the same kind get distinct ids."""
        first = local.create("aws:iam:Role", {})
        second = local.create("aws:iam:Role", {})

        assert first.physical_id != second.physical_id

    def test_update(self, local: LocalProvider) -> None:
        """Test updating attributes in place keeps outputs."""
        created = local.create("aws:lambda:Function", {"memorySize": 128})

        outputs = local.update("aws:lambda:Function", created.physical_id, {"memorySize": 1024})

        assert outputs == created.outputs
        [document] = local.list_resources()
        assert document["attributes"] == {"memorySize": 1024}

    def test_update_missing_resource(self, local: LocalProvider) -> None:
        """Test that updating an absent resource is permanent."""
        with pytest.raises(PermanentProviderError) as exc_info:
            local.update("aws:iam:Role", "role-000000000000", {})

        assert exc_info.value.code == "NotFound"
        assert not exc_info.value.transient

    def test_update_kind_mismatch(self, local: LocalProvider) -> None:
        """Test that a physical id cannot be updated as another kind."""
        created = local.create("aws:iam:Role", {})

        with pytest.raises(PermanentProviderError) as exc_info:
            local.update("aws:s3:Bucket", created.physical_id, {})

        assert exc_info.value.code == "KindMismatch"

    def test_delete_is_idempotent(self, local: LocalProvider) -> None:
        """Test that deleting twice succeeds."""
        created = local.create("aws:iam:Role", {})

        local.delete("aws:iam:Role", created.physical_id)
        local.delete("aws:iam:Role", created.physical_id)

        assert local.list_resources() == []

    def test_invalid_physical_id(self, local: LocalProvider) -> None:
        """Test that ids cannot address files outside the root."""
        with pytest.raises(PermanentProviderError):
            local.delete("aws:iam:Role", "../escape")

    def test_custom_computed_attributes(self, tmp_path: Path) -> None:
        """Test overriding the computed attribute table."""
        local = LocalProvider(tmp_path, computed_attributes={"test:*": ("endpoint",)})

        result = local.create("test:Queue", {})

        assert result.outputs["endpoint"] == f"{result.physical_id}-endpoint"
