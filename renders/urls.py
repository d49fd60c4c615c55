from django.urls import path
from .views import RenderJobCreateView, RenderJobStatusView, RenderJobCancelView

urlpatterns = [
    path("renders/", RenderJobCreateView.as_view(), name="render_create"),
    path("renders/<uuid:job_id>/status/", RenderJobStatusView.as_view(), name="render_status"),
    path("renders/<uuid:job_id>/cancel/", RenderJobCancelView.as_view(), name="render_cancel"),
]
