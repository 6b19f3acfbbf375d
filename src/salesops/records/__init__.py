"""Canonical records -- schemas, field-name normalization, and role-scoped visibility.

Provides the canonical record models (Deal, Callback, Target, Notification, User),
the RecordNormalizer that maps each backend's field-name variants onto them,
the RoleFilter that scopes record sets to a requester, and RecordService for
the mutation paths.
"""
