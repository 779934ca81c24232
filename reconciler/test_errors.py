"""
Tests for KNV errors, MultiError aggregation and the error taxonomy
"""

import pytest
from kubernetes.client.rest import ApiException

from reconciler import errors
from reconciler.objects import ObjectIdentity

ROLE = ObjectIdentity("rbac.authorization.k8s.io", "Role", "team-a", "reader")


def test_error_format():
    """Test KNV codes and resources in messages"""
    print("🧪 Testing ConfigSyncError...")

    err = errors.resource_error(Exception("boom"), ROLE)
    assert str(err).startswith("KNV2010: failed to apply"), str(err)
    assert "reader" in str(err)
    assert err.to_status()["code"] == "2010"
    assert err.to_status()["resources"] == [ROLE.to_status()]

    conflict = errors.ManagementConflictError(ROLE, ":root", "ns-b")
    assert conflict.code == errors.MANAGEMENT_CONFLICT_CODE
    assert "':root'" in conflict.message and "'ns-b'" in conflict.message, "Both scopes are named"

    print("✅ ConfigSyncError tests passed!")


def test_append():
    """Test None-tolerant aggregation"""
    print("\n🧪 Testing append...")

    assert errors.append(None, None) is None
    first = errors.source_error(Exception("missing"), "/repo")
    errs = errors.append(None, first)
    assert len(errs) == 1

    errs = errors.append(errs, errors.append(None, errors.applier_error(Exception("x"))))
    assert len(errs) == 2, "Nested MultiErrors are flattened"

    errs = errors.append(errs, ValueError("plain"))
    assert errs.errors()[-1].code == errors.INTERNAL_ERROR_CODE, "Plain exceptions become internal errors"
    assert "3 error(s)" in errs.format_single_line()

    print("✅ append tests passed!")


def test_same_errors_is_structural():
    """Test that equal error sets compare equal even when built separately"""
    print("\n🧪 Testing same_errors...")

    left = errors.append(None, errors.resource_error(Exception("boom"), ROLE))
    right = errors.append(None, errors.resource_error(Exception("boom"), ROLE))
    other = errors.append(None, errors.resource_error(Exception("bang"), ROLE))

    assert left is not right
    assert errors.same_errors(left, right)
    assert not errors.same_errors(left, other)
    assert errors.same_errors(None, None)
    assert not errors.same_errors(None, left)

    print("✅ same_errors tests passed!")


def test_taxonomy():
    """Test the constructor-injected error table"""
    print("\n🧪 Testing ErrorTaxonomy...")

    taxonomy = errors.ErrorTaxonomy()
    assert errors.MANAGEMENT_CONFLICT_CODE in taxonomy
    assert "another reconciler" in taxonomy.describe(errors.MANAGEMENT_CONFLICT_CODE)
    assert taxonomy.codes() == sorted(taxonomy.codes())

    custom = errors.ErrorTaxonomy({"9999": "custom"})
    assert custom.codes() == ["9999"]
    assert errors.INTERNAL_ERROR_CODE not in custom, "Tables are independent"
    with pytest.raises(ValueError):
        custom.register("9999", "again")

    print("✅ ErrorTaxonomy tests passed!")


def test_request_too_large():
    """Test request-too-large heuristics"""
    print("\n🧪 Testing is_request_too_large_error...")

    assert errors.is_request_too_large_error(Exception("etcdserver: request is too large"))
    assert errors.is_request_too_large_error(Exception("rpc error: trying to send message larger than max (3 vs 2)"))
    assert errors.is_request_too_large_error(ApiException(status=413, reason="Request Entity Too Large"))
    assert not errors.is_request_too_large_error(Exception("connection refused"))
    assert not errors.is_request_too_large_error(None)

    print("✅ is_request_too_large_error tests passed!")
