"""Mark container image digests retired by a release as end of life"""
