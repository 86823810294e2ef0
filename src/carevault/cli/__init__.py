"""CareVault command line interface"""
