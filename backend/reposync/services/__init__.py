"""
Services package for the RepoSync backend.
"""
