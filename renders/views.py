from django.utils.cache import add_never_cache_headers
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import services
from .errors import InvalidStateError, ValidationError
from .models import RenderJob
from .serializers import CancelRequestSerializer, RenderJobSerializer
from .tasks import render_job


class RenderJobCreateView(views.APIView):
    """
    Creates a pending render job from {track_id, user_id, job_data}
    and enqueues it for a worker.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        data = request.data if isinstance(request.data, dict) else {}
        try:
            job = services.submit_job(data.get("track_id"), data.get("user_id"), data.get("job_data"))
        except ValidationError as exc:
            return Response(exc.errors, status=status.HTTP_400_BAD_REQUEST)

        render_job.delay(str(job.id))
        return Response(RenderJobSerializer(job).data, status=status.HTTP_202_ACCEPTED)


class RenderJobStatusView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = services.get_status(job_id)
        except RenderJob.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        response = Response(RenderJobSerializer(job).data)
        # Live status: clients and proxies must revalidate every poll.
        add_never_cache_headers(response)
        return response


class RenderJobCancelView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, job_id):
        ser = CancelRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        try:
            job = services.cancel(job_id, ser.validated_data.get("reason", ""))
        except RenderJob.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)
        except InvalidStateError as exc:
            return Response({"detail": str(exc), "status": exc.status}, status=status.HTTP_409_CONFLICT)

        return Response(RenderJobSerializer(job).data)
