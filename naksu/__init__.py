"""Install, start and maintain the exam server virtual machine on VirtualBox."""

__version__ = "1.0.0"