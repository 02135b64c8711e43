from allauth.account.signals import user_signed_up
from allauth.socialaccount.signals import pre_social_login, social_account_added
from django.dispatch import receiver
from .models import UserPreference
import logging

logger = logging.getLogger(__name__)


@receiver(pre_social_login)
def log_pre_social_login(sender, request, sociallogin, **kwargs):
    logger.info(f"pre_social_login for {sociallogin.account.provider} uid={sociallogin.account.uid}, process={sociallogin.state.get('process') or 'login'}")


@receiver(user_signed_up)
def create_preferences_on_signup(sender, request, user, **kwargs):
    _, created = UserPreference.objects.get_or_create(user=user)
    if created:
        logger.info(f"Created default preferences for new user {user.username}")


@receiver(social_account_added)
def create_preferences_on_connect(sender, request, sociallogin, **kwargs):
    UserPreference.objects.get_or_create(user=sociallogin.user)
