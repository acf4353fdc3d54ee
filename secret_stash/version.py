"""Secret Stash Meta information.
   Secret Stash keeps small secrets on disk with crash-safe writes,
   cooperative locking and optional passphrase encryption.
"""
__title__ = 'secret_stash'
__description__ = (
   'Filesystem-backed store for small secrets with crash-safe writes, '
   'cooperative locking and passphrase encryption at rest.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/secret-stash'
