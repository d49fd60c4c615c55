from django.urls import include, path

urlpatterns = [
    path("api/", include("renders.urls")),
]
