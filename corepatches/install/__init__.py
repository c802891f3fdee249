"""Installed package enumeration and batched uninstalls."""

from corepatches.install.repository import InstalledPackage, Installer, LocalRepository

__all__ = ["InstalledPackage", "Installer", "LocalRepository"]
