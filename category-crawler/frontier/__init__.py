from frontier.models import UrlStatus, JobStatus, UrlRecord, CrawlJob, QueueEntry, Link, RetryPolicy
from frontier.state import Transition, advance, FailureCache
from frontier.scheduler import FrontierScheduler
