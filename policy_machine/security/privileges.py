"""
Privilege Derivation

NIST NGAC rules deciding whether associations justify a privilege on an
object, given the policy classes containing it.
"""

from typing import NamedTuple, Sequence, Union

from .associations import Association
from .elements import Object, ObjectAttribute, Operation, PolicyClass, User, UserAttribute


class Privilege(NamedTuple):
    """A derived privilege (user or attribute, operation, object or attribute)."""

    user_or_attribute: Union[User, UserAttribute]
    operation: Operation
    object_or_attribute: Union[Object, ObjectAttribute]


def is_privilege_single_policy_class(
    user_or_attribute: Union[User, UserAttribute],
    object_or_attribute: ObjectAttribute,
    associations: Sequence[Association]
) -> bool:
    """
    Single policy class rule.

    (u, op, o) is a privilege iff there exists an association (ua, ops, oa)
    such that u reaches ua, op is in ops and o reaches oa. The associations
    are assumed to contain the operation already.
    """
    return any(
        user_or_attribute.is_connected(association.user_attribute)
        and object_or_attribute.is_connected(association.object_attribute)
        for association in associations
    )


def is_privilege_multiple_policy_classes(
    user_or_attribute: Union[User, UserAttribute],
    object_or_attribute: ObjectAttribute,
    associations: Sequence[Association],
    policy_classes: Sequence[PolicyClass]
) -> bool:
    """
    Multiple policy class rule.

    (u, op, o) is a privilege iff for each policy class pc containing o
    there exists an association (ua, ops, oa) such that u reaches ua, op is
    in ops, o reaches oa and oa reaches pc.
    """
    return all(
        any(
            user_or_attribute.is_connected(association.user_attribute)
            and object_or_attribute.is_connected(association.object_attribute)
            and association.object_attribute.is_connected(policy_class)
            for association in associations
        )
        for policy_class in policy_classes
    )


def is_justified(
    user_or_attribute: Union[User, UserAttribute],
    object_or_attribute: ObjectAttribute,
    associations: Sequence[Association],
    policy_classes: Sequence[PolicyClass]
) -> bool:
    """Apply the single or multiple policy class rule by policy class count."""
    if len(policy_classes) < 2:
        return is_privilege_single_policy_class(user_or_attribute, object_or_attribute, associations)
    return is_privilege_multiple_policy_classes(
        user_or_attribute, object_or_attribute, associations, policy_classes
    )
