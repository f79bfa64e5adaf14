# clipstream core package
