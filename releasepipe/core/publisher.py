"""Registry publisher: builds an image and pushes it with bounded retry."""

import logging
import threading
import time
from typing import Callable, Optional

from .interfaces import AgentHandle, Credential, ImageBuilder, ImageDigest, ImageRegistry
from .errors import AuthError, PublishError, RetryPolicy, RunAborted, StageTimeout, TransientPushError


class RegistryPublisher:
    """Builds and pushes images.

    Transient push failures are retried per ``retry_policy``. Authentication
    failures are raised immediately, since a bad credential will not improve
    with time.
    """

    def __init__(self, builder: ImageBuilder, registry: ImageRegistry,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.builder = builder
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, retry_delay=2.0)
        self.sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    def build_and_push(self, image_name: str, image_tag: str, dockerfile_path: str,
                       credential: Optional[Credential], agent: Optional[AgentHandle] = None,
                       cancel_event: Optional[threading.Event] = None,
                       context: str = ".", timeout: Optional[float] = None) -> ImageDigest:
        """
        Build ``image_name:image_tag`` and push it.

        ``timeout`` bounds the whole operation: each build or push call gets
        the time that is left, and backoff never sleeps past it.

        Raises:
            BuildError: The build failed
            AuthError: The registry rejected the credential
            PublishError: Push retries exhausted
            StageTimeout: ``timeout`` elapsed
            RunAborted: Cancelled while waiting to retry
        """
        image_ref = f"{image_name}:{image_tag}"
        deadline = None if timeout is None else time.monotonic() + timeout

        def remaining() -> Optional[float]:
            if deadline is None:
                return None
            left = deadline - time.monotonic()
            if left <= 0:
                raise StageTimeout(timeout, {"image": image_ref})
            return left

        self.logger.info(f"Building {image_ref} from {dockerfile_path}")
        self.builder.build(image_ref, dockerfile_path, context, agent=agent, cancel_event=cancel_event,
                           timeout=remaining())

        max_attempts = self.retry_policy.max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, max_attempts + 1):
            try:
                digest = self.registry.push(image_name, image_tag, credential,
                                            agent=agent, cancel_event=cancel_event, timeout=remaining())
            except AuthError:
                self.logger.error(f"Registry rejected credentials pushing {image_ref}; not retrying")
                raise
            except TransientPushError as e:
                last_error = e
                if attempt == max_attempts:
                    break
                delay = self.retry_policy.delay_for(attempt)
                left = remaining()
                if left is not None and delay >= left:
                    raise StageTimeout(timeout, {"image": image_ref}) from e
                self.logger.warning(f"Push of {image_ref} failed ({str(e)}), "
                                    f"retrying in {delay:g}s (attempt {attempt}/{max_attempts})")
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise RunAborted(f"Run aborted while retrying push of {image_ref}")
                else:
                    self.sleep(delay)
                continue

            self.logger.info(f"Pushed {image_ref} ({digest}) after {attempt} attempt(s)")
            return ImageDigest(image=image_name, tag=image_tag, digest=digest, attempts=attempt)

        raise PublishError(f"Push of {image_ref} failed after {max_attempts} attempts: {str(last_error)}",
                           attempts=max_attempts)
