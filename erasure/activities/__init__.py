"""Activities scheduled by the deletion saga.

Each activity is a callable object with a ``name`` and an async
``__call__(raw_input)`` returning a result tagged by ``kind``.
"""

from erasure.activities.delete_user_data import DeleteUserDataActivity
from erasure.activities.email import SendUserDataDeleteEmailActivity
from erasure.activities.profile import GetProfileActivity, GetServicesPreferencesActivity
from erasure.activities.session_lock import SetUserSessionLockActivity
from erasure.activities.status import (
    GetUserDataProcessingActivity,
    IsFailedUserDataProcessingActivity,
    SetUserDataProcessingStatusActivity,
)
from erasure.activities.subscription_feed import UpdateSubscriptionsFeedActivity

__all__ = [
    "DeleteUserDataActivity",
    "GetProfileActivity",
    "GetServicesPreferencesActivity",
    "GetUserDataProcessingActivity",
    "IsFailedUserDataProcessingActivity",
    "SendUserDataDeleteEmailActivity",
    "SetUserDataProcessingStatusActivity",
    "SetUserSessionLockActivity",
    "UpdateSubscriptionsFeedActivity",
]
