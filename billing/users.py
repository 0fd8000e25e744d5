import logging

from billing.errors import NotFoundError
from billing.models import User

logger = logging.getLogger(__name__)


class UserDirectory:
    """
    Boundary to the platform's user store.

    Only two cached fields are ever written back: the subscription tier and
    the gateway customer id.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_by_id(self, user_id):
        if not user_id:
            return None
        with self.session_factory() as db:
            return db.get(User, user_id)

    def get(self, user_id):
        user = self.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found", resource="user")
        return user

    def update(self, user_id, subscription_tier=None, external_customer_id=None):
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if not user:
                raise NotFoundError("User not found", resource="user")
            if subscription_tier is not None:
                user.subscription_tier = subscription_tier
            if external_customer_id is not None:
                user.external_customer_id = external_customer_id
            db.commit()
            return user


def get_or_create_customer(users: UserDirectory, gateway, user) -> str:
    """Return the user's gateway customer id, creating and caching it on first use."""
    if user.external_customer_id:
        return user.external_customer_id

    customer = gateway.create_customer(user.email, user.name)
    users.update(user.id, external_customer_id=customer.id)
    user.external_customer_id = customer.id
    logger.info("[CUSTOMER] Created customer %s for user %s", customer.id, user.id)
    return customer.id
