from django.test import TestCase, RequestFactory
from django.contrib.auth.models import User
from django.urls import reverse
from unittest.mock import MagicMock
from urllib.parse import urlparse, parse_qs
from authentication.adapter import AutoSocialAccountAdapter


class LandingPageTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', email='test@example.com', password='password')

    def test_anonymous_sees_sign_in(self):
        response = self.client.get(reverse('landing'))

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, 'Sign in with Google')
        self.assertContains(response, reverse('connect_google'))

    def test_signed_in_user_goes_to_dashboard(self):
        self.client.force_login(self.user)
        response = self.client.get(reverse('landing'))
        self.assertRedirects(response, reverse('dashboard:dashboard'))

    def test_logout_requires_post(self):
        self.client.force_login(self.user)

        self.assertEqual(self.client.get(reverse('logout')).status_code, 405)
        response = self.client.post(reverse('logout'))

        self.assertRedirects(response, reverse('landing'))
        self.assertNotIn('_auth_user_id', self.client.session)


class ConnectGoogleTests(TestCase):
    def _params(self, response):
        location = urlparse(response['Location'])
        self.assertEqual(location.path, '/accounts/google/login/')
        return parse_qs(location.query)

    def test_login_requests_calendar_scope_and_offline_access(self):
        response = self.client.get(reverse('connect_google'), {'next': '/dashboard/'})

        self.assertEqual(response.status_code, 302)
        params = self._params(response)
        self.assertEqual(params['process'], ['login'])
        self.assertEqual(params['access_type'], ['offline'])
        self.assertEqual(params['prompt'], ['consent'])
        self.assertIn('https://www.googleapis.com/auth/calendar.events', params['scope'][0].split())
        self.assertEqual(params['next'], ['/dashboard/?resume=true'])

    def test_signed_in_user_connects(self):
        user = User.objects.create_user(username='testuser', password='password')
        self.client.force_login(user)

        params = self._params(self.client.get(reverse('connect_google'), {'next': '/dashboard/?resume=true'}))

        self.assertEqual(params['process'], ['connect'])
        self.assertEqual(params['next'], ['/dashboard/?resume=true'])


class AdapterTests(TestCase):
    def setUp(self):
        self.adapter = AutoSocialAccountAdapter()
        self.factory = RequestFactory()

    def test_auto_signup_always_allowed(self):
        request = self.factory.get('/accounts/google/login/callback/')
        self.assertTrue(self.adapter.is_auto_signup_allowed(request, MagicMock()))

    def test_connect_redirect(self):
        request = self.factory.get('/accounts/google/login/callback/', {'next': '/dashboard/?resume=true'})
        self.assertEqual(self.adapter.get_connect_redirect_url(request, MagicMock()), '/dashboard/?resume=true')

        request = self.factory.get('/accounts/google/login/callback/')
        self.assertEqual(self.adapter.get_connect_redirect_url(request, MagicMock()), reverse('dashboard:dashboard'))
