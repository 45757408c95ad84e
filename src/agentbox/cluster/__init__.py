from .gateway import ClusterGateway, PodCompletion, PodInfo, PodSpec
from .streams import BytePipe

__all__ = ["BytePipe", "ClusterGateway", "PodCompletion", "PodInfo", "PodSpec"]
