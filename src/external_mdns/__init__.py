"""Advertise Kubernetes Services and Ingresses over multicast DNS."""
