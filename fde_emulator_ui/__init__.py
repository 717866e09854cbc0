"""FDE Simulator web interface"""
