from .backend import UploadBackend, invoke_callback
from .cancellation import CancellationToken, CancelReason
from .multipart_controller import ControllerState, MultipartUploadController
from .options import S3UploaderOptions
from .orchestrator import UploadOrchestrator
from .retry import RetryPolicy
from .s3_uploader import S3Uploader
from .signer import AwsSignatureV4, derive_signing_key
from .state_store import InMemoryStateStore, RedisStateStore
from .transport import HttpTransport
from .uploader import Uploader
