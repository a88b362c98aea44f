from campusmarket.models.listing import Listing
from campusmarket.models.order import Order
from campusmarket.models.order_event import OrderEvent
from campusmarket.models.thread import Thread
from campusmarket.models.job_run import JobRun

__all__ = [
    "Listing",
    "Order",
    "OrderEvent",
    "Thread",
    "JobRun",
]
