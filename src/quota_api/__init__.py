"""HTTP adapter exposing the quota ledger to the web app and generation workers."""
