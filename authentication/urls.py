from django.urls import path
from . import views

urlpatterns = [
    path("", views.landing_page, name="landing"),
    path("logout/", views.logout_user, name="logout"),
    path("connect/google/", views.connect_google, name="connect_google"),
]
