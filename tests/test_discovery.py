"""
Tests for resource kind capability lookup
"""
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cluster.discovery import CapabilityLookup

OPENSHIFT = ['v1', 'apps/v1', 'apps.openshift.io/v1', 'build.openshift.io/v1']
VANILLA = ['v1', 'apps/v1', 'batch/v1']


class TestCapabilityLookup:
    """Tests for CapabilityLookup"""

    def test_builtin_kinds_assumed_before_first_refresh(self):
        lookup = CapabilityLookup(MagicMock(return_value=OPENSHIFT))

        assert lookup.supports('Pod')
        assert lookup.supports('Deployment')
        assert not lookup.supports('DeploymentConfig')

    def test_openshift_kinds_after_refresh(self):
        lookup = CapabilityLookup(MagicMock(return_value=OPENSHIFT))

        assert lookup.refresh() is True
        assert lookup.supports('DeploymentConfig')
        assert lookup.supports('Build')

    def test_vanilla_cluster_hides_openshift_kinds(self):
        lookup = CapabilityLookup(MagicMock(return_value=VANILLA))
        lookup.refresh()

        kinds = {k.kind for k in lookup.available_kinds()}
        assert 'DeploymentConfig' not in kinds
        assert 'Build' not in kinds
        assert {'Pod', 'ResourceQuota', 'Deployment', 'StatefulSet', 'ReplicationController'} <= kinds

    def test_unknown_kind_unsupported(self):
        lookup = CapabilityLookup(MagicMock(return_value=OPENSHIFT))

        assert not lookup.supports('CronJob')

    def test_failed_refresh_keeps_previous_view(self):
        fetch = MagicMock(return_value=OPENSHIFT)
        lookup = CapabilityLookup(fetch)
        lookup.refresh()

        fetch.side_effect = RuntimeError("discovery timeout")
        assert lookup.refresh() is False
        assert lookup.supports('DeploymentConfig')

    def test_group_disappearing(self):
        fetch = MagicMock(return_value=OPENSHIFT)
        lookup = CapabilityLookup(fetch)
        lookup.refresh()

        fetch.return_value = VANILLA
        lookup.refresh()
        assert not lookup.supports('Build')

    def test_mark_absent_until_next_refresh(self):
        lookup = CapabilityLookup(MagicMock(return_value=OPENSHIFT))
        lookup.refresh()

        lookup.mark_absent('Build')
        assert not lookup.supports('Build')
        assert lookup.supports('DeploymentConfig')

        lookup.refresh()
        assert lookup.supports('Build')
