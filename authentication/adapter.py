from allauth.socialaccount.adapter import DefaultSocialAccountAdapter
from django.urls import reverse


class AutoSocialAccountAdapter(DefaultSocialAccountAdapter):
    def is_auto_signup_allowed(self, request, sociallogin):
        # Google is the only way in, so never show the signup form
        return True

    def get_connect_redirect_url(self, request, socialaccount):
        return request.GET.get("next") or reverse("dashboard:dashboard")  # back to the dashboard after granting calendar scopes
